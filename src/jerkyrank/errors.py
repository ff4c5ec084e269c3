"""Domain exceptions and the error sink for terminal failures."""

from __future__ import annotations

import time
from collections import deque
from typing import Any

import structlog

logger = structlog.get_logger("jerkyrank.error_sink")


class JerkyRankError(Exception):
    """Base class for all domain errors."""


class InvalidStreakTypeError(JerkyRankError, ValueError):
    """Raised when a streak type is not in the allow-list."""

    def __init__(self, streak_type: str, valid: list[str]) -> None:
        super().__init__(f"Invalid streak type: {streak_type!r}. Must be one of: {', '.join(valid)}")
        self.streak_type = streak_type


class UnknownTopicError(JerkyRankError):
    """Raised when a webhook topic has no processor."""

    def __init__(self, topic: str) -> None:
        super().__init__(f"Unknown webhook topic: {topic}")
        self.topic = topic


class QueueNotReadyError(JerkyRankError):
    """Raised by enqueue when the broker is unreachable."""


class SignatureError(JerkyRankError):
    """Raised when a webhook HMAC does not match the body."""


class ErrorSink:
    """Records terminal failures: dead-lettered jobs, warm failures, programmer errors.

    Every capture is logged with its traceback; the newest entries are kept
    in memory so the admin stats endpoint can show them.
    """

    def __init__(self, max_entries: int = 100) -> None:
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)

    def capture(self, exc: BaseException, **context: Any) -> None:  # noqa: ANN401
        entry: dict[str, Any] = {
            "type": type(exc).__name__,
            "message": str(exc),
            "timestamp": time.time(),
        }
        entry.update({k: v for k, v in context.items() if isinstance(v, (str, int, float, bool, type(None)))})
        self._entries.append(entry)
        logger.error("error_captured", error=str(exc), exc_info=exc, **context)

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        """Newest first."""
        return list(reversed(self._entries))[:limit]

    def __len__(self) -> int:
        return len(self._entries)
