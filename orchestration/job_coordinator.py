# orchestration/job_coordinator.py
"""Chapter batch generation.

Sequential and selective batches generate one chapter at a time in ascending
order, so each chapter sees its predecessor. Parallel batches launch every
chapter at once (bounded by ``MAX_PARALLEL_CHAPTERS``) and each chapter only
sees the chapters that existed when the batch started.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

import structlog

from config import settings
from core.errors import StageValidationError
from models.workflow_models import GeneratedChapter, GenerationMode, Stage
from orchestration.models import BatchEvent, BatchEventKind, BatchResult, ChapterFailure
from orchestration.workflow_engine import WorkflowEngine

logger = structlog.get_logger(__name__)

EventCallback = Callable[[BatchEvent], None]


class _Abandoned(Exception):
    """Raised internally when a unit is dropped because the batch was cancelled."""


class JobCoordinator:
    """Runs chapter batches for one ``WorkflowEngine``."""

    def __init__(
        self,
        engine: WorkflowEngine,
        *,
        max_parallel: int | None = None,
        sequential_delay: float | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.engine = engine
        self.max_parallel = (
            settings.MAX_PARALLEL_CHAPTERS if max_parallel is None else max_parallel
        )
        self.sequential_delay = (
            settings.SEQUENTIAL_CHAPTER_DELAY_SECONDS
            if sequential_delay is None
            else sequential_delay
        )
        self.on_event = on_event
        self._cancel = asyncio.Event()

    # --- Public API ---

    def cancel(self) -> None:
        """Stop the running batch. Finished chapters are kept.

        A request made before a batch starts cancels that batch as soon as it
        starts; the request is cleared when the batch ends.
        """
        logger.info("Chapter batch cancellation requested")
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    async def run(
        self,
        mode: GenerationMode | str = GenerationMode.SEQUENTIAL,
        chapter_numbers: Iterable[int] | None = None,
    ) -> BatchResult:
        """Generate a batch of chapters and report what happened to each.

        Per-chapter failures never raise; they are returned in the result and
        emitted as ``chapter_failed`` events.
        """
        mode = GenerationMode(mode)
        numbers = self._plan(mode, chapter_numbers)
        result = BatchResult(mode=mode, requested=numbers)

        async with self.engine.exclusive(f"generate_chapters:{mode.value}"):
            self.engine.state.ensure_mutable("generate_chapters")
            self.engine.state.begin_generation(len(numbers), mode)
            self._emit(result, "started", message=f"{mode.value} batch of {len(numbers)}")
            logger.info(
                "Chapter batch started",
                mode=mode.value,
                chapters=numbers,
                max_parallel=self.max_parallel if mode is GenerationMode.PARALLEL else 1,
            )
            try:
                if mode is GenerationMode.PARALLEL:
                    await self._run_parallel(result)
                else:
                    await self._run_sequential(result)
            finally:
                self.engine.state.end_generation()
                self._cancel.clear()

        if result.cancelled:
            self._emit(result, "cancelled", message="batch cancelled")
        self._emit(result, "finished")
        logger.info(
            "Chapter batch finished",
            mode=mode.value,
            completed=result.completed_numbers,
            failed=result.failed_numbers,
            skipped=result.skipped,
            cancelled=result.cancelled,
        )
        return result

    # --- Internals ---

    def _plan(self, mode: GenerationMode, chapter_numbers: Iterable[int] | None) -> list[int]:
        blueprint = self.engine.state.blueprint
        if blueprint is None or not blueprint.structure.chapters:
            raise StageValidationError(
                Stage.CHAPTER_GENERATION, "Build a blueprint before generating chapters"
            )
        planned = blueprint.chapter_numbers()
        if chapter_numbers is None:
            if mode is GenerationMode.SELECTIVE:
                raise StageValidationError(
                    Stage.CHAPTER_GENERATION, "Selective mode needs chapter numbers"
                )
            return planned
        numbers = sorted(set(chapter_numbers))
        if not numbers:
            raise StageValidationError(Stage.CHAPTER_GENERATION, "No chapters requested")
        unknown = [n for n in numbers if n not in planned]
        if unknown:
            raise StageValidationError(
                Stage.CHAPTER_GENERATION,
                f"Chapters not in the blueprint: {', '.join(map(str, unknown))}",
            )
        return numbers

    def _emit(
        self,
        result: BatchResult,
        kind: BatchEventKind,
        chapter_number: int | None = None,
        message: str = "",
    ) -> None:
        if self.on_event is None:
            return
        self.on_event(
            BatchEvent(
                kind=kind,
                completed=len(result.completed),
                total=len(result.requested),
                chapter_number=chapter_number,
                message=message,
            )
        )

    async def _run_unit(
        self, number: int, previous_synopses: dict[int, str] | None = None
    ) -> GeneratedChapter:
        """Run one chapter, abandoning it if the batch is cancelled first."""
        unit = asyncio.create_task(
            self.engine.generate_chapter_unit(number, previous_synopses)
        )
        cancel_wait = asyncio.create_task(self._cancel.wait())
        try:
            await asyncio.wait({unit, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # The batch task itself was cancelled; the unit must not outlive it
            unit.cancel()
            await asyncio.gather(unit, return_exceptions=True)
            raise
        finally:
            cancel_wait.cancel()
        if not unit.done():
            unit.cancel()
            await asyncio.gather(unit, return_exceptions=True)
            raise _Abandoned(number)
        return unit.result()

    def _record_success(self, result: BatchResult, chapter: GeneratedChapter) -> None:
        result.completed.append(chapter)
        self.engine.state.record_progress(len(result.completed))
        self._emit(result, "chapter_completed", chapter.number)

    def _record_failure(self, result: BatchResult, number: int, exc: Exception) -> None:
        failure = ChapterFailure(number, str(exc), type(exc).__name__)
        result.failures.append(failure)
        logger.warning(
            "Chapter generation failed",
            chapter_number=number,
            error=failure.error,
            error_type=failure.error_type,
        )
        self._emit(result, "chapter_failed", number, failure.error)

    def _record_skipped(self, result: BatchResult, number: int) -> None:
        result.skipped.append(number)
        result.cancelled = True
        logger.warning("Chapter skipped after cancellation", chapter_number=number)
        self._emit(result, "chapter_skipped", number, "batch cancelled")

    async def _run_sequential(self, result: BatchResult) -> None:
        for index, number in enumerate(result.requested):
            if self._cancel.is_set():
                self._record_skipped(result, number)
                continue
            try:
                chapter = await self._run_unit(number)
            except _Abandoned:
                self._record_skipped(result, number)
                continue
            except Exception as exc:
                # A failed chapter never stops the remaining queue
                self._record_failure(result, number, exc)
                continue
            self._record_success(result, chapter)
            if self.sequential_delay > 0 and index < len(result.requested) - 1:
                await asyncio.sleep(self.sequential_delay)

    async def _run_parallel(self, result: BatchResult) -> None:
        launch_snapshot = {c.number: c.synopsis for c in self.engine.state.chapters}
        semaphore = asyncio.Semaphore(self.max_parallel) if self.max_parallel > 0 else None

        async def _guarded(number: int) -> None:
            if semaphore is None:
                await _attempt(number)
                return
            async with semaphore:
                await _attempt(number)

        async def _attempt(number: int) -> None:
            if self._cancel.is_set():
                self._record_skipped(result, number)
                return
            try:
                chapter = await self._run_unit(number, launch_snapshot)
            except _Abandoned:
                self._record_skipped(result, number)
                return
            except Exception as exc:
                # Sibling chapters keep running
                self._record_failure(result, number, exc)
                return
            self._record_success(result, chapter)

        await asyncio.gather(*(_guarded(n) for n in result.requested))
