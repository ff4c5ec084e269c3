"""Ranking rows touched by the order pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.db.models import ProductRanking

logger = logging.getLogger(__name__)


async def delete_rankings_for_products(db: AsyncSession, user_id: int, product_ids: Iterable[str]) -> int:
    """Remove a user's rankings for products they no longer own. Returns rows deleted."""
    ids = sorted({str(pid) for pid in product_ids if pid})
    if not ids:
        return 0
    result = await db.execute(
        delete(ProductRanking).where(
            ProductRanking.user_id == user_id,
            ProductRanking.shopify_product_id.in_(ids),
        )
    )
    deleted = result.rowcount or 0
    if deleted:
        logger.info("Deleted %d ranking(s) for user %d on products %s", deleted, user_id, ids)
    return deleted
