"""Async SQLAlchemy engine and session management."""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def create_engine(url: str) -> AsyncEngine:
    """Create the async engine. Pool options only apply to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
        connect_args={"statement_cache_size": 0},
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory shared by routes, processors and workers."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with factory() as session:
        yield session


async def wait_until_ready(
    factory: async_sessionmaker[AsyncSession],
    max_attempts: int = 5,
    retry_delay: float = 1.0,
) -> dict[str, Any]:
    """Run ``SELECT 1`` until the database answers.

    A slow first answer or any retry marks a cold start, which makes the
    cache warmer go easy on the connection pool.
    """
    started = time.perf_counter()
    for attempt in range(1, max_attempts + 1):
        try:
            async with factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Database not ready (attempt %d/%d): %s", attempt, max_attempts, exc)
            if attempt < max_attempts:
                await asyncio.sleep(retry_delay * attempt)
            continue
        duration_ms = round((time.perf_counter() - started) * 1000)
        cold_start = duration_ms > 1000 or attempt > 1
        logger.info("Database ready after %d attempt(s), %d ms%s", attempt, duration_ms, " (cold start)" if cold_start else "")
        return {"ready": True, "attempts": attempt, "duration_ms": duration_ms, "cold_start": cold_start}
    return {
        "ready": False,
        "attempts": max_attempts,
        "duration_ms": round((time.perf_counter() - started) * 1000),
        "cold_start": True,
    }
