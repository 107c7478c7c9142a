from __future__ import annotations

import structlog

from core.usage import TokenUsage

logger = structlog.get_logger(__name__)


class TokenAccountant:
    """Accumulate and log token usage per generation action."""

    def __init__(self) -> None:
        self.total = TokenUsage()
        self.action_totals: dict[str, TokenUsage] = {}

    def record_usage(self, action: str, usage: dict[str, int] | TokenUsage | None) -> None:
        """Record token usage for an action."""
        if not usage:
            logger.debug("No usage data to record", action=action)
            return
        self.total.add(usage)
        self.action_totals.setdefault(action, TokenUsage()).add(usage)
        logger.info(
            "Token usage recorded",
            action=action,
            completion_tokens=self.get_action_total(action),
            run_completion_tokens=self.total.completion_tokens,
        )

    def get_action_total(self, action: str) -> int:
        """Return accumulated completion tokens for an action."""
        usage = self.action_totals.get(action)
        return usage.completion_tokens if usage else 0

    def summary(self) -> dict[str, dict[str, int]]:
        return {
            action: usage.as_dict() for action, usage in sorted(self.action_totals.items())
        }
