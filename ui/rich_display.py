from __future__ import annotations

import asyncio
import time

from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from config import settings
from orchestration.models import BatchEvent
from orchestration.token_accountant import TokenAccountant


class RichDisplayManager:
    """Live progress panel for chapter batches."""

    def __init__(
        self,
        accountant: TokenAccountant | None = None,
        enabled: bool | None = None,
    ) -> None:
        self.accountant = accountant
        self.live: Live | None = None
        self.group: Group | None = None
        self.status_text_project: Text = Text("Project: N/A")
        self.status_text_progress: Text = Text("Chapters: 0/0")
        self.status_text_last_event: Text = Text("Last Event: Initializing...")
        self.status_text_failures: Text = Text("Failures: 0")
        self.status_text_tokens_generated: Text = Text("Tokens Generated (this run): 0")
        self.status_text_elapsed_time: Text = Text("Elapsed Time: 0s")
        self.run_start_time: float = 0.0
        self.failures: int = 0
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task | None = None

        if settings.ENABLE_RICH_PROGRESS if enabled is None else enabled:
            self.group = Group(
                self.status_text_project,
                self.status_text_progress,
                self.status_text_last_event,
                self.status_text_failures,
                self.status_text_tokens_generated,
                self.status_text_elapsed_time,
            )
            self.live = Live(
                Panel(
                    self.group,
                    title="StoryLoom Progress",
                    border_style="blue",
                    expand=True,
                ),
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def start(self, project_name: str | None = None) -> None:
        self.run_start_time = time.time()
        if project_name:
            self.status_text_project.plain = f"Project: {project_name}"
        if self.live:
            self.live.start()
            self._stop_event.clear()
            self._task = asyncio.create_task(self._auto_refresh())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        if self.live and self.live.is_started:
            self.live.stop()

    async def _auto_refresh(self) -> None:
        while not self._stop_event.is_set():
            self.update()
            await asyncio.sleep(1)

    def handle_event(self, event: BatchEvent) -> None:
        """``JobCoordinator`` event callback."""
        if event.kind == "chapter_failed":
            self.failures += 1
        label = event.kind.replace("_", " ")
        if event.chapter_number is not None:
            label = f"{label} (chapter {event.chapter_number})"
        if event.message:
            label = f"{label}: {event.message}"
        self.status_text_progress.plain = f"Chapters: {event.completed}/{event.total}"
        self.status_text_last_event.plain = f"Last Event: {label}"
        self.status_text_failures.plain = f"Failures: {self.failures}"
        self.update()

    def update(self) -> None:
        if not (self.live and self.group):
            return
        total_tokens = self.accountant.total.completion_tokens if self.accountant else 0
        self.status_text_tokens_generated.plain = (
            f"Tokens Generated (this run): {total_tokens:,}"
        )
        elapsed_seconds = time.time() - self.run_start_time
        self.status_text_elapsed_time.plain = (
            f"Elapsed Time: {time.strftime('%H:%M:%S', time.gmtime(elapsed_seconds))}"
        )
