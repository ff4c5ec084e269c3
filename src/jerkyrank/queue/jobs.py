"""Webhook jobs as stored in the Redis stream."""

from __future__ import annotations

import json
import secrets
import time
import zlib
from dataclasses import dataclass, field
from typing import Any


def make_job_id(job_type: str, topic: str, now: float | None = None) -> str:
    """``<type>:<topic>:<epoch_ms>-<rand>``."""
    epoch_ms = int((now if now is not None else time.time()) * 1000)
    return f"{job_type}:{topic}:{epoch_ms}-{secrets.token_hex(4)}"


def _id(value: Any) -> str:  # noqa: ANN401
    if value is None or isinstance(value, bool):
        return ""
    return str(value)


def ordering_key(job_type: str, payload: dict[str, Any]) -> str:
    """Key whose jobs must run one at a time, in enqueue order.

    Orders serialize on order number, products on product id and customers
    on customer id.
    """
    if job_type == "orders":
        value = payload.get("name") or payload.get("order_number") or payload.get("id")
    elif job_type == "customers":
        value = payload.get("id") or payload.get("email")
    else:
        value = payload.get("id")
    return f"{job_type}:{_id(value)}"


def lane_for(key: str, lanes: int) -> int:
    """Stable across processes and restarts, unlike ``hash()``."""
    return zlib.crc32(key.encode("utf-8")) % lanes


@dataclass
class WebhookJob:
    id: str
    type: str
    topic: str
    payload: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)
    key: str = ""
    enqueued_at: float = field(default_factory=time.time)
    attempt: int = 0
    stream_id: str | None = None

    @classmethod
    def create(cls, job_type: str, topic: str, payload: dict[str, Any], meta: dict[str, Any] | None = None) -> WebhookJob:
        return cls(
            id=make_job_id(job_type, topic),
            type=job_type,
            topic=topic,
            payload=payload,
            meta=meta or {},
            key=ordering_key(job_type, payload),
        )

    def to_fields(self) -> dict[str, str]:
        return {
            "id": self.id,
            "type": self.type,
            "topic": self.topic,
            "key": self.key,
            "payload": json.dumps(self.payload, default=str),
            "meta": json.dumps(self.meta, default=str),
            "enqueued_at": repr(self.enqueued_at),
        }

    @classmethod
    def from_fields(cls, stream_id: str, fields: dict[str, str]) -> WebhookJob:
        """Rebuild a job read from the stream. Raises ValueError on a malformed entry."""
        try:
            payload = json.loads(fields["payload"])
            meta = json.loads(fields.get("meta") or "{}")
            job_type = fields["type"]
            topic = fields["topic"]
        except (KeyError, TypeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Malformed stream entry {stream_id}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"Malformed stream entry {stream_id}: payload is not an object")
        return cls(
            id=fields.get("id") or make_job_id(job_type, topic),
            type=job_type,
            topic=topic,
            payload=payload,
            meta=meta if isinstance(meta, dict) else {},
            key=fields.get("key") or ordering_key(job_type, payload),
            enqueued_at=float(fields.get("enqueued_at") or time.time()),
            stream_id=stream_id,
        )
