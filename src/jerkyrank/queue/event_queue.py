"""Durable webhook queue on Redis Streams.

Ingress appends jobs to ``webhooks:shopify``; consumers in the
``webhook-workers`` group read them and hand each job to a lane chosen by
its ordering key. A lane runs one job at a time, retries included, so two
webhooks for the same order never overlap and commit in enqueue order.

Delivery is at-least-once: an entry is acked only after its handler
returned or it was dead-lettered, and a restarted consumer re-reads its
own unacked entries first.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
import structlog

from jerkyrank.errors import ErrorSink, QueueNotReadyError
from jerkyrank.queue.jobs import WebhookJob, lane_for

logger = structlog.get_logger()

STREAM = "webhooks:shopify"
GROUP = "webhook-workers"
DEAD_STREAM = "webhooks:dead"

_BROKER_ERRORS = (aioredis.RedisError, OSError, asyncio.TimeoutError)

JobHandler = Callable[[WebhookJob], Awaitable[Any]]


class TokenBucket:
    """Caps job starts at ``rate`` per ``per`` seconds across every lane."""

    def __init__(self, rate: int, per: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate = rate
        self.per = per
        self._clock = clock
        self._tokens = float(rate)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(float(self.rate), self._tokens + elapsed * self.rate / self.per)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) * self.per / self.rate)


def backoff_delay(attempt: int, base: float) -> float:
    """Exponential: base, 2*base, 4*base, ..."""
    return base * 2 ** (attempt - 1)


class EventQueue:
    """Producer and consumer for webhook jobs."""

    def __init__(
        self,
        redis_client: aioredis.Redis | None,
        handler: JobHandler | None = None,
        *,
        consumer_name: str = "webhook-worker-1",
        concurrency: int = 3,
        rate_limit: int = 20,
        rate_window: float = 1.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        io_timeout: float = 5.0,
        stream_maxlen: int = 10_000,
        dead_maxlen: int = 1000,
        error_sink: ErrorSink | None = None,
        stream: str = STREAM,
        group: str = GROUP,
        dead_stream: str = DEAD_STREAM,
    ) -> None:
        self.redis = redis_client
        self.handler = handler
        self.consumer_name = consumer_name
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.stream = stream
        self.group = group
        self.dead_stream = dead_stream
        self._io_timeout = io_timeout
        self._stream_maxlen = stream_maxlen
        self._dead_maxlen = dead_maxlen
        self._error_sink = error_sink or ErrorSink()
        self._bucket = TokenBucket(rate_limit, rate_window)

        self._ready = False
        self._running = False
        self._lanes: list[asyncio.Queue[WebhookJob]] = []
        self._lane_tasks: list[asyncio.Task[None]] = []
        # Stream ids handed to a lane and not yet finished; a replay skips them.
        self._routed: set[str] = set()
        self._active = 0
        self._delayed = 0
        self._completed = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._ready

    def _mark_unready(self, op: str, exc: BaseException) -> None:
        if self._ready:
            logger.warning("queue_not_ready", op=op, error=str(exc))
        self._ready = False

    async def ping(self) -> bool:
        """One readiness probe. Flips :meth:`is_ready` either way."""
        if self.redis is None:
            return False
        try:
            await asyncio.wait_for(self.redis.ping(), self._io_timeout)
        except _BROKER_ERRORS as exc:
            self._mark_unready("ping", exc)
            return False
        if not self._ready:
            logger.info("queue_ready", stream=self.stream)
        self._ready = True
        return True

    async def connect(self, ready_timeout: float = 10.0, retry_interval: float = 0.5) -> bool:
        """Ping until the broker answers or the deadline passes, then ensure the group."""
        if self.redis is None:
            logger.info("queue_disabled", reason="no queue URL configured")
            return False
        deadline = time.monotonic() + ready_timeout
        while not await self.ping():
            if time.monotonic() >= deadline:
                logger.warning("queue_connect_timeout", timeout=ready_timeout)
                return False
            await asyncio.sleep(retry_interval)
        await self.setup_group()
        return True

    async def setup_group(self) -> None:
        """Create the consumer group (idempotent)."""
        if self.redis is None:
            raise RuntimeError("EventQueue has no Redis client")
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("queue_group_created", stream=self.stream, group=self.group)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        topic: str,
        payload: dict[str, Any],
        meta: dict[str, Any] | None = None,
    ) -> str:
        """Append a job and return its id. Raises QueueNotReadyError when the broker is down."""
        if self.redis is None or not self._ready:
            raise QueueNotReadyError("Event queue is not ready")
        job = WebhookJob.create(job_type, topic, payload, meta)
        try:
            await asyncio.wait_for(
                self.redis.xadd(self.stream, job.to_fields(), maxlen=self._stream_maxlen, approximate=True),
                self._io_timeout,
            )
        except _BROKER_ERRORS as exc:
            self._mark_unready("enqueue", exc)
            raise QueueNotReadyError(str(exc)) from exc
        logger.info("webhook_enqueued", job_id=job.id, topic=topic, key=job.key)
        return job.id

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def run(self, count: int = 10, block_ms: int = 1000) -> None:
        """Consume until :meth:`stop`. Unacked entries of this consumer are replayed first."""
        if self.redis is None or self.handler is None:
            raise RuntimeError("EventQueue.run needs a Redis client and a handler")
        self._running = True
        self._lanes = [asyncio.Queue(maxsize=count) for _ in range(self.concurrency)]
        self._lane_tasks = [asyncio.create_task(self._lane_worker(i)) for i in range(self.concurrency)]
        logger.info("queue_consumer_started", consumer=self.consumer_name, lanes=self.concurrency)

        read_from = "0"
        try:
            while self._running:
                if not self._ready and not await self.ping():
                    await asyncio.sleep(1)
                    continue
                try:
                    if read_from == "0":
                        await self.setup_group()
                    events = await self.redis.xreadgroup(
                        groupname=self.group,
                        consumername=self.consumer_name,
                        streams={self.stream: read_from},
                        count=count,
                        block=None if read_from == "0" else block_ms,
                    )
                except _BROKER_ERRORS as exc:
                    self._mark_unready("read", exc)
                    read_from = "0"
                    await asyncio.sleep(1)
                    continue

                entries = events[0][1] if events else []
                if read_from != ">":
                    if not entries:
                        read_from = ">"
                        continue
                    read_from = entries[-1][0]
                    logger.info("queue_replaying_pending", count=len(entries))

                for stream_id, fields in entries:
                    await self._route(stream_id, fields)
        except asyncio.CancelledError:
            pass
        finally:
            await self._stop_lanes()
            logger.info("queue_consumer_stopped", consumer=self.consumer_name)

    async def _route(self, stream_id: str, fields: dict[str, str] | None) -> None:
        if not fields:
            # Trimmed out of the stream while pending.
            await self._ack(stream_id)
            return
        try:
            job = WebhookJob.from_fields(stream_id, fields)
        except ValueError as exc:
            await self._dead_letter_raw(stream_id, fields, exc)
            return
        if stream_id in self._routed:
            logger.debug("queue_entry_in_flight", stream_id=stream_id, job_id=job.id)
            return
        self._routed.add(stream_id)
        await self._lanes[lane_for(job.key, self.concurrency)].put(job)

    async def _lane_worker(self, index: int) -> None:
        lane = self._lanes[index]
        while True:
            job = await lane.get()
            try:
                await self.dispatch(job)
            except Exception:
                logger.exception("queue_lane_error", lane=index, job_id=job.id)
            finally:
                if job.stream_id is not None:
                    self._routed.discard(job.stream_id)
                lane.task_done()

    async def _stop_lanes(self) -> None:
        for task in self._lane_tasks:
            task.cancel()
        await asyncio.gather(*self._lane_tasks, return_exceptions=True)
        self._lane_tasks = []
        self._routed.clear()

    def stop(self) -> None:
        """Signal the consumer to stop after the current read."""
        self._running = False

    async def dispatch(self, job: WebhookJob) -> bool:
        """Run one job to completion or dead-letter. Returns True on success.

        ValueError (bad payload, invalid streak type) is permanent and
        dead-letters without retry; anything else is retried with
        exponential backoff until ``max_attempts``.
        """
        if self.handler is None:
            raise RuntimeError("EventQueue has no job handler")
        while True:
            job.attempt += 1
            await self._bucket.acquire()
            self._active += 1
            try:
                await self.handler(job)
            except asyncio.CancelledError:
                raise
            except ValueError as exc:
                await self._dead_letter(job, exc)
                return False
            except Exception as exc:
                if job.attempt >= self.max_attempts:
                    await self._dead_letter(job, exc)
                    return False
                delay = backoff_delay(job.attempt, self.backoff_seconds)
                logger.warning(
                    "job_retry_scheduled",
                    job_id=job.id,
                    attempt=job.attempt,
                    delay=delay,
                    error=str(exc),
                )
            else:
                self._completed += 1
                if job.stream_id is not None:
                    await self._ack(job.stream_id)
                logger.info("job_completed", job_id=job.id, attempt=job.attempt)
                return True
            finally:
                self._active -= 1

            self._delayed += 1
            try:
                await asyncio.sleep(delay)
            finally:
                self._delayed -= 1

    async def _ack(self, stream_id: str) -> None:
        if self.redis is None:
            return
        try:
            await asyncio.wait_for(self.redis.xack(self.stream, self.group, stream_id), self._io_timeout)
        except _BROKER_ERRORS as exc:
            # Left pending; replayed on the next start and absorbed by idempotent processors.
            logger.warning("job_ack_failed", stream_id=stream_id, error=str(exc))

    async def _dead_letter(self, job: WebhookJob, exc: BaseException) -> None:
        self._failed += 1
        logger.error("job_dead_lettered", job_id=job.id, topic=job.topic, attempts=job.attempt, error=str(exc))
        self._error_sink.capture(exc, job_id=job.id, topic=job.topic, attempts=job.attempt)
        fields = {**job.to_fields(), "error": f"{type(exc).__name__}: {exc}", "attempts": str(job.attempt)}
        await self._write_dead(fields)
        if job.stream_id is not None:
            await self._ack(job.stream_id)

    async def _dead_letter_raw(self, stream_id: str, fields: dict[str, str], exc: BaseException) -> None:
        self._failed += 1
        logger.error("job_dead_lettered", stream_id=stream_id, error=str(exc))
        self._error_sink.capture(exc, stream_id=stream_id)
        await self._write_dead({**fields, "error": str(exc), "attempts": "0"})
        await self._ack(stream_id)

    async def _write_dead(self, fields: dict[str, str]) -> None:
        if self.redis is None:
            return
        try:
            await asyncio.wait_for(
                self.redis.xadd(self.dead_stream, fields, maxlen=self._dead_maxlen, approximate=True),
                self._io_timeout,
            )
        except _BROKER_ERRORS as exc:
            logger.warning("dead_letter_write_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def _stream_len(self, stream: str) -> int:
        if self.redis is None or not self._ready:
            return 0
        try:
            return int(await asyncio.wait_for(self.redis.xlen(stream), self._io_timeout))
        except _BROKER_ERRORS:
            return 0

    async def stats(self) -> dict[str, Any]:
        return {
            "ready": self._ready,
            "waiting": sum(lane.qsize() for lane in self._lanes),
            "active": self._active,
            "completed": self._completed,
            "failed": self._failed,
            "delayed": self._delayed,
            "dead": await self._stream_len(self.dead_stream),
            "stream_length": await self._stream_len(self.stream),
        }

    async def dead_letters(self, count: int = 20) -> list[dict[str, Any]]:
        """Newest dead-lettered jobs."""
        if self.redis is None or not self._ready:
            return []
        try:
            entries = await asyncio.wait_for(self.redis.xrevrange(self.dead_stream, count=count), self._io_timeout)
        except _BROKER_ERRORS:
            return []
        result = []
        for stream_id, fields in entries:
            entry: dict[str, Any] = {"stream_id": stream_id, **fields}
            if "payload" in entry:
                try:
                    entry["payload"] = json.loads(entry["payload"])
                except json.JSONDecodeError:
                    pass
            result.append(entry)
        return result


async def publish_queue_stats(queue: EventQueue, emit: Callable[[dict[str, Any]], None], interval: float = 5.0) -> None:
    """Push queue stats to the admin monitor every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            emit(await queue.stats())
        except Exception:
            logger.exception("queue_stats_publish_failed")
