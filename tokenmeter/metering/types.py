"""
Value types shared by the counter store, quota engine and recorder.
"""

from dataclasses import dataclass
from enum import Enum


class WindowKind(str, Enum):
    """Rolling usage windows and their lengths in seconds."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return _WINDOW_SECONDS[self]


_WINDOW_SECONDS = {
    WindowKind.MINUTE: 60,
    WindowKind.HOUR: 3600,
    WindowKind.DAY: 86400,
}


@dataclass(frozen=True)
class UsageWindowKey:
    """Identifies one counter: (provider id, model id, window)."""

    provider_id: str
    model_id: str
    window: WindowKind

    @property
    def redis_key(self) -> str:
        return f"token_stats:{self.provider_id}:{self.model_id}:{self.window.value}"

    @classmethod
    def for_model(cls, provider_id: str, model_id: str) -> "tuple[UsageWindowKey, ...]":
        """All window keys touched by one usage event, shortest window first."""
        return tuple(cls(provider_id, model_id, window) for window in WindowKind)


@dataclass(frozen=True)
class UsageAggregate:
    """Counter values for one window; the default instance is the zero aggregate."""

    total_tokens: int = 0
    request_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported for one model call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = -1

    def __post_init__(self):
        if self.total_tokens == -1:
            object.__setattr__(self, "total_tokens", self.prompt_tokens + self.completion_tokens)
        for name in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")

    def as_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
