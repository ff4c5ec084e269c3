"""Super-admin data maintenance endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.auth.dependencies import get_current_user, require_super_admin
from jerkyrank.auth.sessions import SessionUser
from jerkyrank.db.models import (
    ActivityLog,
    PageView,
    ProductRanking,
    ProductView,
    Streak,
    UserAchievement,
    UserProductSearch,
)
from jerkyrank.dependencies import get_db, get_services
from jerkyrank.services import Services

logger = structlog.get_logger()

router = APIRouter(prefix="/admin/data", tags=["Admin"])

CONFIRMATION_PHRASE = "delete all data"

CLEARABLE_TABLES = (
    PageView,
    ProductRanking,
    UserProductSearch,
    ActivityLog,
    ProductView,
    UserAchievement,
    Streak,
)


class ClearAllRequest(BaseModel):
    confirmation: str = ""


@router.post("/clear-cache")
async def clear_cache(
    user: SessionUser = Depends(require_super_admin),  # noqa: B008
    services: Services = Depends(get_services),  # noqa: B008
) -> dict[str, Any]:
    cleared = await services.coherence.clear_all()
    logger.info("admin_cache_cleared", user_id=user.id, caches=cleared)
    return {"success": True, "clearedCaches": cleared}


@router.delete("/clear-all")
async def clear_all(
    body: ClearAllRequest | None = Body(default=None),  # noqa: B008
    user: SessionUser = Depends(require_super_admin),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
    services: Services = Depends(get_services),  # noqa: B008
) -> dict[str, Any]:
    """Delete every engagement row, then every cache. Needs the typed confirmation."""
    if body is None or body.confirmation.strip().lower() != CONFIRMATION_PHRASE:
        raise HTTPException(status_code=400, detail=f'Type "{CONFIRMATION_PHRASE}" to confirm')

    deleted: dict[str, int] = {}
    async with db.begin():
        for model in CLEARABLE_TABLES:
            result = await db.execute(delete(model))
            deleted[model.__tablename__] = result.rowcount or 0

    cleared = await services.coherence.clear_all()
    logger.warning("admin_data_cleared", user_id=user.id, deleted=deleted)
    services.bus.broadcast_leaderboard_update()
    return {"success": True, "deleted": deleted, "clearedCaches": cleared}


@router.get("/check-access")
async def check_access(user: SessionUser = Depends(get_current_user)) -> dict[str, bool]:  # noqa: B008
    return {"hasSuperAdminAccess": user.is_super_admin}
