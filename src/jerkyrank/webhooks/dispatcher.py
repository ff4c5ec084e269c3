"""Routes a webhook to its processor, then applies cache and notification effects."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol

from jerkyrank.cache.coherence import CoherenceController
from jerkyrank.errors import UnknownTopicError
from jerkyrank.queue.jobs import ordering_key
from jerkyrank.webhooks.outcome import ProcessOutcome

if TYPE_CHECKING:
    from jerkyrank.queue.jobs import WebhookJob

logger = logging.getLogger(__name__)

UNKNOWN_TOPIC = "unknown_topic"


class Processor(Protocol):
    kind: str

    async def process(self, topic: str, payload: dict[str, Any]) -> ProcessOutcome: ...

    def announce(self, outcome: ProcessOutcome) -> None: ...


class KeyedLocks:
    """One lock per ordering key, dropped once nobody holds or waits for it.

    Waiters acquire in arrival order.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class WebhookDispatcher:
    """Runs one webhook end to end: process, commit, cache coherence, announce.

    Transient errors propagate so the queue retries the job; processors are
    idempotent so a retry after a partial run converges.
    """

    def __init__(self, processors: dict[str, Processor], coherence: CoherenceController) -> None:
        self.processors = processors
        self.coherence = coherence
        self.inline_locks = KeyedLocks()

    def accepts(self, kind: str, topic: str) -> bool:
        return kind in self.processors and topic.startswith(f"{kind}/")

    async def handle(self, kind: str, topic: str, payload: dict[str, Any]) -> ProcessOutcome:
        processor = self.processors.get(kind)
        if processor is None or not self.accepts(kind, topic):
            logger.warning("No processor for %s webhook with topic %r", kind, topic)
            return ProcessOutcome.skip(kind, topic, UNKNOWN_TOPIC)

        try:
            outcome = await processor.process(topic, payload)
        except UnknownTopicError:
            logger.warning("Unhandled %s topic %s, skipping", kind, topic)
            outcome = ProcessOutcome.skip(kind, topic, UNKNOWN_TOPIC)
            processor.announce(outcome)
            return outcome

        actions = await self.coherence.apply(outcome)
        processor.announce(outcome)
        if outcome.skipped:
            logger.info("Skipped %s: %s", topic, outcome.reason)
        else:
            logger.info("Processed %s (%s), cache actions: %s", topic, outcome.action, actions)
        return outcome

    async def handle_job(self, job: WebhookJob) -> ProcessOutcome:
        return await self.handle(job.type, job.topic, job.payload)

    async def handle_inline(self, kind: str, topic: str, payload: dict[str, Any]) -> ProcessOutcome:
        """Handle a webhook outside the queue, one at a time per ordering key.

        Same per-key FIFO the queue lanes give, for the in-process fallback.
        """
        async with self.inline_locks.hold(ordering_key(kind, payload)):
            return await self.handle(kind, topic, payload)
