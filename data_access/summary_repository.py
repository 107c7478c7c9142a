# data_access/summary_repository.py
"""Storage for chapter summaries, one record per (project_id, chapter_number)."""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod

import structlog

from config import MEMORY_DIR
from models.memory_models import ChapterSummary

logger = structlog.get_logger(__name__)

__all__ = [
    "SummaryRepository",
    "InMemorySummaryRepository",
    "JsonFileSummaryRepository",
]


class SummaryRepository(ABC):
    """Upsert/list contract for chapter summaries."""

    @abstractmethod
    async def upsert(self, summary: ChapterSummary) -> ChapterSummary:
        """Store ``summary``, replacing any record with the same key."""

    @abstractmethod
    async def get(self, project_id: str, chapter_number: int) -> ChapterSummary | None:
        """Return one summary or ``None``."""

    @abstractmethod
    async def list_for_project(self, project_id: str) -> list[ChapterSummary]:
        """All summaries for a project ordered by chapter number."""

    @abstractmethod
    async def delete_project(self, project_id: str) -> int:
        """Remove every summary for a project and return how many were removed."""


class InMemorySummaryRepository(SummaryRepository):
    def __init__(self) -> None:
        self._records: dict[tuple[str, int], ChapterSummary] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, summary: ChapterSummary) -> ChapterSummary:
        async with self._lock:
            existing = self._records.get(summary.key)
            if existing is not None:
                summary = summary.model_copy(update={"created_at": existing.created_at})
            self._records[summary.key] = summary
        return summary

    async def get(self, project_id: str, chapter_number: int) -> ChapterSummary | None:
        return self._records.get((project_id, chapter_number))

    async def list_for_project(self, project_id: str) -> list[ChapterSummary]:
        return sorted(
            (s for s in self._records.values() if s.project_id == project_id),
            key=lambda s: s.chapter_number,
        )

    async def delete_project(self, project_id: str) -> int:
        async with self._lock:
            keys = [k for k in self._records if k[0] == project_id]
            for key in keys:
                del self._records[key]
        return len(keys)


class JsonFileSummaryRepository(SummaryRepository):
    """One JSON document per project under ``base_dir``.

    Blocking file IO runs in the default executor.
    """

    def __init__(self, base_dir: str = MEMORY_DIR) -> None:
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, project_id: str) -> str:
        safe_id = "".join(c if c.isalnum() or c in ("_", "-") else "_" for c in project_id)
        return os.path.join(self.base_dir, f"{safe_id}_summaries.json")

    def _read_sync(self, project_id: str) -> dict[int, ChapterSummary]:
        path = self._path(project_id)
        if not os.path.exists(path):
            return {}
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        records = {}
        for item in raw.get("summaries", []):
            summary = ChapterSummary.model_validate(item)
            records[summary.chapter_number] = summary
        return records

    def _write_sync(self, project_id: str, records: dict[int, ChapterSummary]) -> None:
        path = self._path(project_id)
        payload = {
            "projectId": project_id,
            "summaries": [
                records[n].model_dump(mode="json", by_alias=True) for n in sorted(records)
            ],
        }
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False)
        os.replace(tmp_path, path)

    async def _read(self, project_id: str) -> dict[int, ChapterSummary]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_sync, project_id)

    async def _write(self, project_id: str, records: dict[int, ChapterSummary]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_sync, project_id, records)

    async def upsert(self, summary: ChapterSummary) -> ChapterSummary:
        async with self._lock:
            records = await self._read(summary.project_id)
            existing = records.get(summary.chapter_number)
            if existing is not None:
                summary = summary.model_copy(update={"created_at": existing.created_at})
            records[summary.chapter_number] = summary
            await self._write(summary.project_id, records)
        logger.debug(
            "Stored chapter summary",
            project_id=summary.project_id,
            chapter_number=summary.chapter_number,
        )
        return summary

    async def get(self, project_id: str, chapter_number: int) -> ChapterSummary | None:
        records = await self._read(project_id)
        return records.get(chapter_number)

    async def list_for_project(self, project_id: str) -> list[ChapterSummary]:
        records = await self._read(project_id)
        return [records[n] for n in sorted(records)]

    async def delete_project(self, project_id: str) -> int:
        async with self._lock:
            records = await self._read(project_id)
            path = self._path(project_id)
            if os.path.exists(path):
                os.remove(path)
        return len(records)
