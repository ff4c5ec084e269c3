"""Global error handlers: every error response is JSON with a ``detail`` key."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from jerkyrank.errors import SignatureError

logger = structlog.get_logger()


def _request_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("request_id")


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(SignatureError)
    async def signature_error_handler(request: Request, exc: SignatureError) -> JSONResponse:
        # The sender retries 401s, and the reason stays in our logs only.
        logger.warning(
            "webhook_rejected",
            path=request.url.path,
            topic=request.headers.get("X-Shopify-Topic"),
            shop=request.headers.get("X-Shopify-Shop-Domain"),
            reason=str(exc),
        )
        return JSONResponse(status_code=401, content={"detail": "Webhook verification failed"})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all: capture in the error sink, answer 500 with the request id."""
        request_id = _request_id()
        logger.error("unhandled_exception", path=request.url.path, method=request.method, error=str(exc))
        services = getattr(request.app.state, "services", None)
        if services is not None:
            services.error_sink.capture(exc, path=request.url.path, method=request.method, request_id=request_id)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "requestId": request_id},
        )
