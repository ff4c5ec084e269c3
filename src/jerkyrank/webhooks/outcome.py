"""Structured result of processing one webhook."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ACTION_SKIPPED = "skipped"


@dataclass
class ProcessOutcome:
    """What a processor did, and what the cache layer needs to know about it.

    Business skips are successful outcomes with ``action == "skipped"`` and a
    ``reason``; they never mutate anything.
    """

    kind: str
    topic: str
    action: str
    success: bool = True
    reason: str | None = None
    user_id: int | None = None
    order_number: str | None = None
    product_id: str | None = None
    affected_product_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.action == ACTION_SKIPPED

    @classmethod
    def skip(cls, kind: str, topic: str, reason: str, **fields: Any) -> ProcessOutcome:  # noqa: ANN401
        return cls(kind=kind, topic=topic, action=ACTION_SKIPPED, reason=reason, **fields)
