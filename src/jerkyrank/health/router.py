"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.dependencies import get_db, get_services
from jerkyrank.services import Services

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_db),  # noqa: B008
    services: Services = Depends(get_services),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe: database, cache tier and queue.

    A memory-tier cache or an unready queue is reported but does not make
    the process unready; webhooks fall back to synchronous processing.
    """
    checks: dict[str, object] = {}

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    checks["cache_tier"] = services.substrate.tier
    checks["queue_ready"] = services.queue.is_ready()

    return {"status": "ready" if checks["database"] == "ok" else "degraded", "checks": checks}


@router.get("/version")
async def version(services: Services = Depends(get_services)) -> dict[str, str]:  # noqa: B008
    settings = services.settings
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
