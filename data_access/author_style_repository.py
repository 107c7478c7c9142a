# data_access/author_style_repository.py
"""Storage for author styles, one record per author."""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod

import structlog

from config import MEMORY_DIR
from models.memory_models import AuthorStyle, author_key

logger = structlog.get_logger(__name__)

__all__ = [
    "AuthorStyleRepository",
    "InMemoryAuthorStyleRepository",
    "JsonFileAuthorStyleRepository",
]


class AuthorStyleRepository(ABC):
    @abstractmethod
    async def upsert(self, style: AuthorStyle) -> AuthorStyle:
        """Store ``style``, replacing any record for the same author."""

    @abstractmethod
    async def get(self, author_name: str) -> AuthorStyle | None:
        """Return the style for ``author_name`` or ``None``."""

    @abstractmethod
    async def list_all(self) -> list[AuthorStyle]:
        """Every stored style ordered by author name."""


def _replace(records: dict[str, AuthorStyle], style: AuthorStyle) -> AuthorStyle:
    existing = records.get(style.key)
    if existing is not None:
        style = style.model_copy(update={"created_at": existing.created_at})
    records[style.key] = style
    return style


def _ordered(records: dict[str, AuthorStyle]) -> list[AuthorStyle]:
    return [records[key] for key in sorted(records)]


class InMemoryAuthorStyleRepository(AuthorStyleRepository):
    def __init__(self) -> None:
        self._records: dict[str, AuthorStyle] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, style: AuthorStyle) -> AuthorStyle:
        async with self._lock:
            return _replace(self._records, style)

    async def get(self, author_name: str) -> AuthorStyle | None:
        return self._records.get(author_key(author_name))

    async def list_all(self) -> list[AuthorStyle]:
        return _ordered(self._records)


class JsonFileAuthorStyleRepository(AuthorStyleRepository):
    """All styles in one ``author_styles.json`` document under ``base_dir``.

    Blocking file IO runs in the default executor.
    """

    FILE_NAME = "author_styles.json"

    def __init__(self, base_dir: str = MEMORY_DIR) -> None:
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)
        self.path = os.path.join(self.base_dir, self.FILE_NAME)
        self._lock = asyncio.Lock()

    def _read_sync(self) -> dict[str, AuthorStyle]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, encoding="utf-8") as f:
            raw = json.load(f)
        records = {}
        for item in raw.get("authorStyles", []):
            style = AuthorStyle.model_validate(item)
            records[style.key] = style
        return records

    def _write_sync(self, records: dict[str, AuthorStyle]) -> None:
        payload = {
            "authorStyles": [
                style.model_dump(mode="json", by_alias=True) for style in _ordered(records)
            ]
        }
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    async def _read(self) -> dict[str, AuthorStyle]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_sync)

    async def upsert(self, style: AuthorStyle) -> AuthorStyle:
        async with self._lock:
            records = await self._read()
            style = _replace(records, style)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write_sync, records)
        logger.debug("Stored author style", author=style.author_name)
        return style

    async def get(self, author_name: str) -> AuthorStyle | None:
        records = await self._read()
        return records.get(author_key(author_name))

    async def list_all(self) -> list[AuthorStyle]:
        return _ordered(await self._read())
