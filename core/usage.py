# core/usage.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass
class TokenUsage:
    """Token counts for one or more generation calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: TokenUsage | dict[str, int] | None) -> None:
        """Accumulate counts from another instance or a provider usage dict."""
        if not usage:
            return
        other = usage if isinstance(usage, TokenUsage) else TokenUsage.from_dict(usage)
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    @classmethod
    def from_dict(cls, data: dict[str, int]) -> TokenUsage:
        prompt = int(data.get("prompt_tokens") or 0)
        completion = int(data.get("completion_tokens") or 0)
        total = int(data.get("total_tokens") or prompt + completion)
        return cls(prompt, completion, total)

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
