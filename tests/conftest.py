"""Shared test fixtures.

Tests run against a throwaway SQLite database and fakeredis; nothing needs
PostgreSQL or a Redis server.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jerkyrank.config import Settings
from jerkyrank.database import create_session_factory
from jerkyrank.db.base import Base
from jerkyrank.db.models import User, UserSession
from jerkyrank.main import create_app
from jerkyrank.services import Services, build_services
from jerkyrank.webhooks.verifier import compute_signature

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="development",
        redis_url="",
        queue_redis_url="",
        shopify_webhook_secret=WEBHOOK_SECRET,
        ingress_deadline_seconds=5.0,
        log_format="console",
        rate_limit_requests=10_000,
        super_admin_emails=["boss@jerky.com"],
        queue_ready_timeout_seconds=0.5,
        queue_backoff_seconds=0.0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jerkyrank.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def fake_redis() -> AsyncGenerator[fake_aioredis.FakeRedis, None]:
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: fake_aioredis.FakeRedis,
) -> AsyncGenerator[Services, None]:
    """Services over fakeredis. The cache is on the Redis tier, the queue is not connected."""
    svc = build_services(settings, redis_client=fake_redis, session_factory=session_factory)
    await svc.substrate.connect(ready_timeout=0.5)
    yield svc
    await svc.bus.stop()
    if svc.background:
        for task in list(svc.background):
            task.cancel()


@pytest.fixture
def app(settings: Settings, services: Services) -> FastAPI:
    """App with the test services attached; ASGITransport does not run the lifespan."""
    application = create_app(settings, services)
    application.state.services = services
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_ws(*, fail_send: bool = False) -> MagicMock:
    """Create a mock WebSocket."""
    ws = AsyncMock()
    ws.accept = AsyncMock()
    if fail_send:
        ws.send_text = AsyncMock(side_effect=RuntimeError("connection closed"))
    else:
        ws.send_text = AsyncMock()
    return ws


def sent_events(ws: MagicMock) -> list[dict[str, Any]]:
    """Every message a mock WebSocket was sent, decoded."""
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


def signed_headers(body: bytes, topic: str, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": compute_signature(body, secret),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": "jerky-test.myshopify.com",
    }


async def create_user(
    factory: async_sessionmaker[AsyncSession],
    email: str = "jane@example.com",
    *,
    shopify_customer_id: str | None = None,
    first_name: str | None = "Jane",
    last_name: str | None = "Doe",
    role: str = "user",
) -> User:
    async with factory() as db:
        user = User(
            email=email,
            shopify_customer_id=shopify_customer_id,
            first_name=first_name,
            last_name=last_name,
            display_name=f"{first_name} {last_name}" if first_name and last_name else first_name,
            role=role,
            active=True,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


async def create_session(
    factory: async_sessionmaker[AsyncSession],
    user_id: int,
    session_id: str,
    *,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    async with factory() as db:
        db.add(UserSession(id=session_id, user_id=user_id, expires_at=datetime.now(timezone.utc) + expires_in))
        await db.commit()
    return session_id
