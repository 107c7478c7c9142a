# core/errors.py
"""Exception hierarchy for StoryLoom.

Configuration errors fail fast and are never retried. Provider errors are
retried across the fallback chain and surface only as ``AllModelsFailedError``
once every model has been attempted.
"""

from __future__ import annotations

from collections.abc import Sequence


class StoryLoomError(Exception):
    """Base exception for StoryLoom operations."""


# --- Configuration ---


class ConfigurationError(StoryLoomError):
    """Invalid or incomplete configuration for a call."""


class UnconfiguredModelError(ConfigurationError):
    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' is not configured")
        self.model_id = model_id


class MissingCredentialError(ConfigurationError):
    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' requires an API key but none was supplied")
        self.model_id = model_id


class MissingPromptTemplateError(ConfigurationError):
    def __init__(self, task_id: str):
        super().__init__(f"No prompt template available for task '{task_id}'")
        self.task_id = task_id


# --- Provider / transport ---


class ProviderError(StoryLoomError):
    """Transport or provider-side failure for one model."""

    def __init__(
        self,
        model_id: str,
        message: str,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.model_id = model_id
        self.status_code = status_code

    def __str__(self) -> str:
        parts = [super().__str__(), f"model={self.model_id}"]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        return " ".join(parts)


class AllModelsFailedError(StoryLoomError):
    """Every model in the attempt list failed.

    ``attempts`` holds ``(model_id, error)`` pairs in the order tried.
    """

    def __init__(self, action: str, attempts: Sequence[tuple[str, Exception]]):
        self.action = action
        self.attempts = list(attempts)
        last = self.last_error
        super().__init__(
            f"All fallback models failed for action {action}. Last error: {last}"
        )

    @property
    def last_error(self) -> Exception | None:
        return self.attempts[-1][1] if self.attempts else None

    @property
    def last_model_id(self) -> str | None:
        return self.attempts[-1][0] if self.attempts else None


# --- Workflow ---


class StageValidationError(StoryLoomError):
    """Required input for a stage is missing; raised before any provider call."""

    def __init__(self, stage: int, message: str):
        super().__init__(message)
        self.stage = stage


class TransitionError(StoryLoomError):
    def __init__(self, from_stage: int, to_stage: int, reason: str):
        super().__init__(
            f"Cannot move from stage {from_stage} to stage {to_stage}: {reason}"
        )
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.reason = reason


class WorkflowBusyError(StoryLoomError):
    """Another operation is already running for this project."""

    def __init__(self, operation: str, running: str | None = None):
        detail = f" ('{running}' in progress)" if running else ""
        super().__init__(f"Cannot start '{operation}': workflow is busy{detail}")
        self.operation = operation
        self.running = running


class ChapterNotFoundError(StoryLoomError):
    def __init__(self, chapter_number: int):
        super().__init__(f"Chapter {chapter_number} does not exist")
        self.chapter_number = chapter_number


class ProjectNotFoundError(StoryLoomError):
    def __init__(self, project_id: str):
        super().__init__(f"Project '{project_id}' not found")
        self.project_id = project_id


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
