"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from jerkyrank.admin.router import router as admin_router
from jerkyrank.config import Settings, get_settings
from jerkyrank.database import wait_until_ready
from jerkyrank.health.router import router as health_router
from jerkyrank.middleware import setup_middleware
from jerkyrank.queue.event_queue import publish_queue_stats
from jerkyrank.services import Services, build_services
from jerkyrank.webhooks.router import router as webhooks_router
from jerkyrank.ws.bridge import PubSubBridge
from jerkyrank.ws.router import router as ws_router

logger = logging.getLogger(__name__)


async def _cancel(task: asyncio.Task[None]) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def make_lifespan(settings: Settings, prebuilt: Services | None = None):  # noqa: ANN201
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup and shutdown lifecycle."""
        services = prebuilt or build_services(settings)
        app.state.services = services

        db_status = await wait_until_ready(services.session_factory)
        await services.substrate.connect(ready_timeout=settings.queue_ready_timeout_seconds)
        await services.queue.connect(ready_timeout=settings.queue_ready_timeout_seconds)
        services.bus.start_sweeper(settings.bus_sweep_interval_seconds)

        tasks: list[asyncio.Task[None]] = []
        bridge = None
        if services.redis is not None:
            bridge = PubSubBridge(services.redis, services.bus)
            tasks.append(asyncio.create_task(bridge.start()))
        if settings.queue_consume_in_app and services.queue_redis is not None:
            tasks.append(asyncio.create_task(services.queue.run()))
        tasks.append(asyncio.create_task(
            publish_queue_stats(services.queue, services.bus.broadcast_queue_stats, settings.queue_stats_interval_seconds)
        ))

        services.warmer.warm_all_in_background(cold_start=db_status["cold_start"])
        logger.info("Startup complete (cache tier=%s, queue ready=%s)", services.substrate.tier, services.queue.is_ready())

        yield

        if bridge is not None:
            await bridge.stop()
        services.queue.stop()
        for task in tasks:
            await _cancel(task)
        await services.aclose()

    return lifespan


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``services`` replaces the bundle the lifespan would build; tests use it
    to run against fakeredis and SQLite.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="JerkyRank API",
        description="Webhook ingestion, cache coherence and live notifications for the jerky ranking platform",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=make_lifespan(settings, services),
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(webhooks_router)
    app.include_router(admin_router)
    app.include_router(ws_router)

    return app


app = create_app()
