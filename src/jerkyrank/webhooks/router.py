"""Shopify webhook endpoints.

Every endpoint answers within the ingress deadline: the job is queued when
the broker is up, otherwise processed in-process, and a run that overruns
the deadline finishes in the background. Once a payload is signed and
accepted the sender never gets a retriable error.
"""

import asyncio
import json
import time
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request

from jerkyrank.auth.dependencies import require_admin
from jerkyrank.dependencies import get_services
from jerkyrank.errors import QueueNotReadyError
from jerkyrank.services import Services
from jerkyrank.webhooks.dispatcher import UNKNOWN_TOPIC
from jerkyrank.webhooks.verifier import require_valid_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

KINDS = ("orders", "products", "customers")

HMAC_HEADER = "X-Shopify-Hmac-Sha256"
TOPIC_HEADER = "X-Shopify-Topic"
SHOP_HEADER = "X-Shopify-Shop-Domain"
WEBHOOK_ID_HEADER = "X-Shopify-Webhook-Id"


async def _process_inline(services: Services, kind: str, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
    deadline = services.settings.ingress_deadline_seconds
    task = services.spawn(services.dispatcher.handle_inline(kind, topic, payload), name=f"webhook:{topic}")
    try:
        outcome = await asyncio.wait_for(asyncio.shield(task), deadline)
    except asyncio.TimeoutError:
        logger.warning("webhook_processing_backgrounded", topic=topic, deadline=deadline)
        return {"success": True, "queued": False, "processing": "background"}
    except Exception as exc:
        # Already captured by the task's done callback.
        logger.error("webhook_processing_failed", topic=topic, error=str(exc))
        return {"success": False, "queued": False, "error": "processing_failed"}

    body: dict[str, Any] = {"success": outcome.success, "queued": False, "action": outcome.action}
    if outcome.skipped:
        body["skipped"] = outcome.reason
    return body


async def receive_webhook(kind: str, request: Request, services: Services) -> dict[str, Any]:
    started = time.perf_counter()
    raw_body = await request.body()
    topic = request.headers.get(TOPIC_HEADER, "")
    shop_domain = request.headers.get(SHOP_HEADER)

    # Raises SignatureError, answered with 401 by the error handlers.
    require_valid_signature(raw_body, request.headers.get(HMAC_HEADER), services.settings.shopify_webhook_secret)

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None
    if not isinstance(payload, dict):
        logger.warning("webhook_invalid_payload", kind=kind, topic=topic, shop=shop_domain)
        return {"success": False, "skipped": "invalid_payload"}

    if not services.dispatcher.accepts(kind, topic):
        logger.warning("webhook_unknown_topic", kind=kind, topic=topic, shop=shop_domain)
        return {"success": True, "skipped": UNKNOWN_TOPIC, "topic": topic}

    meta = {
        "shop_domain": shop_domain,
        "webhook_id": request.headers.get(WEBHOOK_ID_HEADER),
        "received_at": time.time(),
    }

    queue = services.queue
    if queue.is_ready():
        try:
            job_id = await asyncio.wait_for(
                queue.enqueue(kind, topic, payload, meta),
                services.settings.ingress_deadline_seconds,
            )
        except (QueueNotReadyError, asyncio.TimeoutError) as exc:
            logger.warning("webhook_enqueue_failed", topic=topic, error=str(exc) or type(exc).__name__)
        else:
            logger.info(
                "webhook_accepted",
                topic=topic,
                job_id=job_id,
                duration_ms=round((time.perf_counter() - started) * 1000),
            )
            return {"success": True, "queued": True, "jobId": job_id}

    logger.info("webhook_sync_fallback", topic=topic)
    return await _process_inline(services, kind, topic, payload)


@router.post("/orders")
async def orders_webhook(request: Request, services: Services = Depends(get_services)) -> dict[str, Any]:  # noqa: B008
    return await receive_webhook("orders", request, services)


@router.post("/products")
async def products_webhook(request: Request, services: Services = Depends(get_services)) -> dict[str, Any]:  # noqa: B008
    return await receive_webhook("products", request, services)


@router.post("/customers")
async def customers_webhook(request: Request, services: Services = Depends(get_services)) -> dict[str, Any]:  # noqa: B008
    return await receive_webhook("customers", request, services)


@router.get("/health")
async def webhooks_health(services: Services = Depends(get_services)) -> dict[str, Any]:  # noqa: B008
    return {
        "status": "ok",
        "queue_ready": services.queue.is_ready(),
        "endpoints": [f"/webhooks/{kind}" for kind in KINDS],
    }


@router.get("/stats", dependencies=[Depends(require_admin)])
async def webhooks_stats(services: Services = Depends(get_services)) -> dict[str, Any]:  # noqa: B008
    return {
        "queue": await services.queue.stats(),
        "dead_letters": await services.queue.dead_letters(),
        "recent_errors": services.error_sink.recent(),
        "bus": services.bus.get_stats(),
        "cache": services.substrate.stats(),
    }
