"""Request ID middleware: generates or propagates X-Request-Id.

Shopify deliveries carry no X-Request-Id but do carry a webhook id that is
stable across retries; it becomes the request id so every attempt of one
delivery shares a log trail.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id (and the webhook topic, if any) to the log context."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = (
            request.headers.get("X-Request-Id")
            or request.headers.get("X-Shopify-Webhook-Id")
            or str(uuid.uuid4())
        )
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        topic = request.headers.get("X-Shopify-Topic")
        if topic:
            structlog.contextvars.bind_contextvars(webhook_topic=topic)
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
