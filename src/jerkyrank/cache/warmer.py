"""Populate hot caches after startup without delaying readiness."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from jerkyrank.errors import ErrorSink

logger = structlog.get_logger()

WarmFn = Callable[[], Awaitable[Any]]

COLD_START_PAUSE_SECONDS = 0.25


class CacheWarmer:
    """Runs registered warm functions; one failing never stops the rest.

    A cold start warms one cache at a time with a short pause in between so
    the database pool is not flooded; otherwise all run concurrently.
    """

    def __init__(self, error_sink: ErrorSink | None = None, pause: float = COLD_START_PAUSE_SECONDS) -> None:
        self._warmers: list[tuple[str, WarmFn]] = []
        self._error_sink = error_sink
        self._pause = pause
        self._task: asyncio.Task[dict[str, Any]] | None = None

    def register(self, name: str, fn: WarmFn) -> None:
        self._warmers.append((name, fn))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._warmers]

    async def _run_one(self, name: str, fn: WarmFn, strategy: str) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            await fn()
        except Exception as exc:
            duration = round((time.perf_counter() - started) * 1000)
            logger.warning("cache_warm_failed", cache=name, duration_ms=duration, error=str(exc))
            if self._error_sink is not None:
                self._error_sink.capture(exc, service="cache_warmer", cache_name=name, strategy=strategy)
            return {"name": name, "success": False, "duration": duration, "error": str(exc)}
        duration = round((time.perf_counter() - started) * 1000)
        logger.info("cache_warmed", cache=name, duration_ms=duration)
        return {"name": name, "success": True, "duration": duration}

    async def warm_all(self, cold_start: bool = False) -> dict[str, Any]:
        strategy = "sequential" if cold_start else "parallel"
        started = time.perf_counter()
        logger.info("cache_warm_started", count=len(self._warmers), strategy=strategy)

        if cold_start:
            results = []
            for index, (name, fn) in enumerate(self._warmers):
                results.append(await self._run_one(name, fn, strategy))
                if index < len(self._warmers) - 1:
                    await asyncio.sleep(self._pause)
        else:
            results = list(await asyncio.gather(*(self._run_one(name, fn, strategy) for name, fn in self._warmers)))

        summary = {
            "total_duration_ms": round((time.perf_counter() - started) * 1000),
            "success_count": sum(1 for r in results if r["success"]),
            "failure_count": sum(1 for r in results if not r["success"]),
            "strategy": strategy,
            "results": results,
        }
        logger.info(
            "cache_warm_finished",
            success_count=summary["success_count"],
            failure_count=summary["failure_count"],
            total_duration_ms=summary["total_duration_ms"],
        )
        return summary

    def warm_all_in_background(self, cold_start: bool = False) -> asyncio.Task[dict[str, Any]]:
        """Schedule :meth:`warm_all` and return immediately."""
        self._task = asyncio.get_running_loop().create_task(self.warm_all(cold_start))
        return self._task

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
