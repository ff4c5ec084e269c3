"""Order line persistence, keyed by (order_number, product, sku)."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.db.models import CustomerOrderItem
from jerkyrank.db.upsert import insert_for

logger = logging.getLogger(__name__)

LineKey = tuple[str, str, str]


def line_key(item: CustomerOrderItem) -> LineKey:
    return (item.order_number, item.shopify_product_id, item.sku or "")


async def get_order_items(db: AsyncSession, order_number: str) -> list[CustomerOrderItem]:
    result = await db.execute(
        select(CustomerOrderItem)
        .where(CustomerOrderItem.order_number == order_number)
        .order_by(CustomerOrderItem.id)
    )
    return list(result.scalars())


async def upsert_order_item(db: AsyncSession, values: dict[str, Any]) -> None:
    """Insert one line, or update quantity and line data on the same key."""
    now = datetime.now(timezone.utc)
    stmt = insert_for(db, CustomerOrderItem).values(**values, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=["order_number", "shopify_product_id", "sku"],
        set_={
            "quantity": stmt.excluded.quantity,
            "fulfillment_status": stmt.excluded.fulfillment_status,
            "line_item_data": stmt.excluded.line_item_data,
            "user_id": stmt.excluded.user_id,
            "customer_email": stmt.excluded.customer_email,
            "order_date": stmt.excluded.order_date,
            "updated_at": now,
        },
    )
    await db.execute(stmt)


async def delete_order_items(db: AsyncSession, item_ids: Iterable[int]) -> int:
    ids = list(item_ids)
    if not ids:
        return 0
    result = await db.execute(delete(CustomerOrderItem).where(CustomerOrderItem.id.in_(ids)))
    return result.rowcount or 0


async def delete_order(db: AsyncSession, order_number: str) -> list[CustomerOrderItem]:
    """Delete every line of an order. Returns the deleted rows."""
    items = await get_order_items(db, order_number)
    if items:
        await delete_order_items(db, [item.id for item in items])
    return items


async def purchased_product_ids(db: AsyncSession, user_id: int) -> list[str]:
    """Distinct products a user has bought, in id order."""
    result = await db.execute(
        select(CustomerOrderItem.shopify_product_id)
        .where(CustomerOrderItem.user_id == user_id)
        .distinct()
        .order_by(CustomerOrderItem.shopify_product_id)
    )
    return [row[0] for row in result.all()]
