# orchestration/session.py
"""Project session: binds a workflow engine to a project repository."""

from __future__ import annotations

import asyncio

import structlog

from config import settings
from core.errors import StoryLoomError
from data_access.project_repository import ProjectRepository
from models.project_models import ProjectSnapshot
from orchestration.workflow_engine import WorkflowEngine
from orchestration.workflow_state import WorkflowState

logger = structlog.get_logger(__name__)


class ProjectSession:
    """Explicit and automatic saving for one engine's project.

    Explicit saves and autosaves share one lock, so a snapshot is never
    written while another write for the same session is in progress.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        repository: ProjectRepository,
        *,
        autosave_interval: float | None = None,
    ) -> None:
        self.engine = engine
        self.repository = repository
        self._save_lock = asyncio.Lock()
        self.autosaver = Autosaver(
            self,
            settings.AUTOSAVE_INTERVAL_SECONDS if autosave_interval is None else autosave_interval,
        )

    async def __aenter__(self) -> ProjectSession:
        self.autosaver.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def state(self) -> WorkflowState:
        return self.engine.state

    def snapshot(self) -> ProjectSnapshot:
        state = self.engine.state
        return ProjectSnapshot(
            project_id=state.project_id or self.engine.draft_project_id,
            name=state.project_name,
            description=state.project_description or None,
            state=state.to_snapshot_state(),
        )

    async def save(self) -> ProjectSnapshot:
        """Write the current state and adopt the stored project id."""
        async with self._save_lock:
            stored = await self.repository.save(self.snapshot())
            self.engine.state.project_id = stored.project_id
            logger.info("Project snapshot saved", project_id=stored.project_id)
            return stored

    async def autosave_once(self) -> bool:
        """Save if autosave is enabled and the project was saved before."""
        state = self.engine.state
        if not state.editor_settings.auto_save:
            logger.debug("Autosave skipped: disabled in editor settings")
            return False
        if state.project_id is None:
            logger.debug("Autosave skipped: project has not been saved yet")
            return False
        await self.save()
        return True

    async def load(self, project_id: str) -> WorkflowState:
        """Replace the engine state with a stored snapshot."""
        async with self._save_lock:
            snapshot = await self.repository.load(project_id)
        state = WorkflowState.from_snapshot_state(snapshot.state)
        state.project_id = snapshot.project_id
        state.project_name = snapshot.name
        state.project_description = snapshot.description or ""
        self.engine.load_state(state)
        logger.info("Project loaded", project_id=project_id, stage=int(state.current_stage))
        return state

    async def close(self) -> None:
        await self.autosaver.stop()


class Autosaver:
    """Background task that saves a session every ``interval`` seconds."""

    def __init__(self, session: ProjectSession, interval: float) -> None:
        self.session = session
        self.interval = interval
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or self.interval <= 0:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="storyloom-autosave")
        logger.debug("Autosave started", interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.debug("Autosave stopped")

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.session.autosave_once()
            except (StoryLoomError, OSError) as e:
                logger.error("Autosave failed", error=str(e), exc_info=True)
