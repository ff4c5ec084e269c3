"""arq tasks for the webhook queue.

Runs as a separate process holding no WebSocket connections. Its bus only
publishes; web processes deliver the messages through their pub/sub bridge.
The stream consumer starts with the worker and lives until it shuts down;
arq itself only schedules the short tasks below.
"""

from __future__ import annotations

import asyncio
import logging

from jerkyrank.config import get_settings
from jerkyrank.middleware.logging import setup_logging
from jerkyrank.services import Services, build_services

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Build the service bundle, connect the cache and queue, start consuming."""
    settings = get_settings()
    setup_logging(settings, role="worker")
    services = build_services(settings, local_delivery=False)
    await services.substrate.connect(ready_timeout=settings.queue_ready_timeout_seconds)
    if not await services.queue.connect(ready_timeout=settings.queue_ready_timeout_seconds):
        logger.warning("Webhook queue not reachable at startup; consumer will keep probing")
    ctx["services"] = services
    ctx["consumer"] = asyncio.create_task(services.queue.run(), name="webhook-consumer")
    logger.info("Webhook worker started (consumer=%s)", settings.queue_consumer_name)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    services: Services | None = ctx.get("services")
    consumer: asyncio.Task[None] | None = ctx.get("consumer")
    if services is not None:
        services.queue.stop()
    if consumer is not None:
        consumer.cancel()
        try:
            await consumer
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Webhook consumer failed")
    if services is not None:
        await services.aclose()
    logger.info("Webhook worker shut down")


async def warm_caches(ctx: dict) -> dict:  # type: ignore[type-arg]
    """Re-warm the shared caches, e.g. after an admin clear."""
    services: Services = ctx["services"]
    return await services.warmer.warm_all(cold_start=True)


async def publish_queue_stats(ctx: dict) -> dict:  # type: ignore[type-arg]
    """Push one queue stats snapshot to the admin monitor room."""
    services: Services = ctx["services"]
    stats = await services.queue.stats()
    services.bus.broadcast_queue_stats(stats)
    await services.bus.drain()
    return stats
