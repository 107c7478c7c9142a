# data_access/project_repository.py
"""Project snapshot persistence. ``save`` is an upsert keyed by project id."""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod

import structlog

from config import PROJECTS_DIR
from core.errors import ProjectNotFoundError
from models.project_models import ProjectListing, ProjectSnapshot
from models.workflow_models import utc_now

logger = structlog.get_logger(__name__)

__all__ = [
    "ProjectRepository",
    "InMemoryProjectRepository",
    "JsonFileProjectRepository",
    "new_project_id",
]


def new_project_id() -> str:
    return uuid.uuid4().hex


def _listing(snapshot: ProjectSnapshot) -> ProjectListing:
    return ProjectListing(
        project_id=snapshot.project_id or "",
        name=snapshot.name,
        description=snapshot.description,
        updated_at=snapshot.updated_at,
        current_stage=int(snapshot.state.get("currentStage", 1)),
    )


class ProjectRepository(ABC):
    @abstractmethod
    async def save(self, snapshot: ProjectSnapshot) -> ProjectSnapshot:
        """Upsert ``snapshot``; a missing project id creates a new record."""

    @abstractmethod
    async def load(self, project_id: str) -> ProjectSnapshot:
        """Return the stored snapshot or raise ``ProjectNotFoundError``."""

    @abstractmethod
    async def list_projects(self) -> list[ProjectListing]:
        """Listings ordered by most recently updated first."""

    @abstractmethod
    async def delete(self, project_id: str) -> None:
        """Remove a project or raise ``ProjectNotFoundError``."""


class InMemoryProjectRepository(ProjectRepository):
    def __init__(self) -> None:
        self._projects: dict[str, ProjectSnapshot] = {}

    async def save(self, snapshot: ProjectSnapshot) -> ProjectSnapshot:
        stored = snapshot.model_copy(
            update={
                "project_id": snapshot.project_id or new_project_id(),
                "updated_at": utc_now(),
            },
            deep=True,
        )
        self._projects[stored.project_id] = stored
        return stored.model_copy(deep=True)

    async def load(self, project_id: str) -> ProjectSnapshot:
        try:
            return self._projects[project_id].model_copy(deep=True)
        except KeyError:
            raise ProjectNotFoundError(project_id) from None

    async def list_projects(self) -> list[ProjectListing]:
        return sorted(
            (_listing(s) for s in self._projects.values()),
            key=lambda listing: listing.updated_at,
            reverse=True,
        )

    async def delete(self, project_id: str) -> None:
        if self._projects.pop(project_id, None) is None:
            raise ProjectNotFoundError(project_id)


class JsonFileProjectRepository(ProjectRepository):
    """One ``<project_id>.json`` file per project under ``base_dir``."""

    def __init__(self, base_dir: str = PROJECTS_DIR) -> None:
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def _path(self, project_id: str) -> str:
        if not project_id or any(c in project_id for c in ("/", "\\", "..")):
            raise ProjectNotFoundError(project_id)
        return os.path.join(self.base_dir, f"{project_id}.json")

    def _save_sync(self, snapshot: ProjectSnapshot) -> None:
        path = self._path(snapshot.project_id or "")
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(snapshot.model_dump_json(by_alias=True, indent=2))
        os.replace(tmp_path, path)

    def _load_sync(self, project_id: str) -> ProjectSnapshot:
        path = self._path(project_id)
        if not os.path.exists(path):
            raise ProjectNotFoundError(project_id)
        with open(path, encoding="utf-8") as f:
            return ProjectSnapshot.model_validate(json.load(f))

    def _list_sync(self) -> list[ProjectSnapshot]:
        snapshots = []
        for name in os.listdir(self.base_dir):
            if not name.endswith(".json"):
                continue
            try:
                snapshots.append(self._load_sync(name[: -len(".json")]))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable project file", file=name, error=str(e))
        return snapshots

    async def save(self, snapshot: ProjectSnapshot) -> ProjectSnapshot:
        stored = snapshot.model_copy(
            update={
                "project_id": snapshot.project_id or new_project_id(),
                "updated_at": utc_now(),
            }
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_sync, stored)
        logger.info("Project saved", project_id=stored.project_id, name=stored.name)
        return stored

    async def load(self, project_id: str) -> ProjectSnapshot:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load_sync, project_id)

    async def list_projects(self) -> list[ProjectListing]:
        loop = asyncio.get_running_loop()
        snapshots = await loop.run_in_executor(None, self._list_sync)
        return sorted(
            (_listing(s) for s in snapshots),
            key=lambda listing: listing.updated_at,
            reverse=True,
        )

    async def delete(self, project_id: str) -> None:
        path = self._path(project_id)
        if not os.path.exists(path):
            raise ProjectNotFoundError(project_id)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, os.remove, path)
