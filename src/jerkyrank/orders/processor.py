"""Order webhooks: keep stored order lines equal to the latest order state.

Lines are keyed by (order_number, product id, sku). Replaying a payload
converges on the same rows, so redelivery is harmless.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.customers.repository import resolve_user
from jerkyrank.errors import UnknownTopicError
from jerkyrank.orders.repository import (
    LineKey,
    delete_order,
    delete_order_items,
    get_order_items,
    line_key,
    upsert_order_item,
)
from jerkyrank.rankings.repository import delete_rankings_for_products
from jerkyrank.webhooks.outcome import ProcessOutcome
from jerkyrank.webhooks.schemas import OrderPayload

if TYPE_CHECKING:
    from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)

KIND = "orders"
DELIVERED = "delivered"


def _unique(values: list[str]) -> list[str]:
    return sorted(set(values))


class OrderProcessor:
    """Handles ``orders/create``, ``orders/updated`` and ``orders/cancelled``."""

    kind = KIND
    actions = ("create", "updated", "cancelled")

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: NotificationBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus

    async def process(self, topic: str, payload: dict[str, Any]) -> ProcessOutcome:
        action = topic.split("/", 1)[-1]
        if action not in self.actions:
            raise UnknownTopicError(topic)

        order = OrderPayload.model_validate(payload)
        order_number = order.reference
        if not order_number:
            logger.warning("Order webhook %s without an order number, skipping", topic)
            return ProcessOutcome.skip(KIND, topic, "missing_order_number")

        if action == "cancelled":
            return await self._cancel(topic, order_number)
        return await self._upsert(topic, order, order_number)

    async def _cancel(self, topic: str, order_number: str) -> ProcessOutcome:
        async with self._session_factory() as db:
            deleted = await delete_order(db, order_number)
            user_id = next((item.user_id for item in deleted if item.user_id is not None), None)
            product_ids = _unique([item.shopify_product_id for item in deleted])
            rankings_deleted = 0
            if user_id is not None and product_ids:
                rankings_deleted = await delete_rankings_for_products(db, user_id, product_ids)
            await db.commit()

        logger.info("Cancelled order %s: deleted %d line(s)", order_number, len(deleted))
        return ProcessOutcome(
            kind=KIND,
            topic=topic,
            action="deleted",
            user_id=user_id,
            order_number=order_number,
            affected_product_ids=product_ids,
            details={
                "records_count": len(deleted),
                "rankings_deleted": rankings_deleted,
            },
        )

    def _incoming_lines(self, order: OrderPayload, order_number: str, order_date: datetime,
                        user_id: int, customer_email: str | None) -> tuple[dict[LineKey, dict[str, Any]], int]:
        """Build the desired line set. Repeated keys in one payload sum their quantities."""
        lines: dict[LineKey, dict[str, Any]] = {}
        missing_product = 0
        for item in order.line_items:
            if not item.product_id:
                missing_product += 1
                continue
            key = (order_number, item.product_id, item.sku or "")
            if key in lines:
                lines[key]["quantity"] += item.quantity
                continue
            lines[key] = {
                "order_number": order_number,
                "order_date": order_date,
                "shopify_product_id": item.product_id,
                "sku": item.sku or "",
                "quantity": item.quantity,
                "fulfillment_status": order.fulfillment_status_for(item),
                "user_id": user_id,
                "customer_email": customer_email,
                "line_item_data": item.line_item_data(),
            }
        return lines, missing_product

    async def _upsert(self, topic: str, order: OrderPayload, order_number: str) -> ProcessOutcome:
        order_date = order.created_at or order.processed_at
        if order_date is None:
            logger.warning("Order %s has no creation date, skipping", order_number)
            return ProcessOutcome.skip(KIND, topic, "missing_order_data", order_number=order_number)
        if order_date.tzinfo is None:
            order_date = order_date.replace(tzinfo=timezone.utc)

        async with self._session_factory() as db:
            user = await resolve_user(db, order.customer_id, order.customer_email)
            if user is None:
                await db.rollback()
                logger.warning(
                    "Order %s: no user for customer %s / %s, skipping",
                    order_number, order.customer_id, order.customer_email,
                )
                return ProcessOutcome.skip(KIND, topic, "user_not_found", order_number=order_number)

            lines, missing_product = self._incoming_lines(
                order, order_number, order_date, user.id, order.customer_email or user.email
            )
            if missing_product:
                logger.warning(
                    "Order %s: ignored %d/%d line item(s) without a product id",
                    order_number, missing_product, len(order.line_items),
                )

            existing = await get_order_items(db, order_number)
            stored = {line_key(item): item for item in existing}

            downgraded = [
                item.shopify_product_id
                for key, item in stored.items()
                if item.fulfillment_status == DELIVERED
                and key in lines
                and lines[key]["fulfillment_status"] != DELIVERED
            ]
            orphans = [item for key, item in stored.items() if key not in lines]
            zeroed = [stored[key] for key, values in lines.items() if values["quantity"] == 0 and key in stored]
            removed = orphans + zeroed
            deleted_count = await delete_order_items(db, [item.id for item in removed])

            written = [values for values in lines.values() if values["quantity"] > 0]
            for values in written:
                await upsert_order_item(db, values)

            rankings_deleted = 0
            if downgraded:
                rankings_deleted = await delete_rankings_for_products(db, user.id, downgraded)
            await db.commit()

        if not written and not deleted_count:
            logger.warning("Order %s has no line items to store", order_number)
            return ProcessOutcome.skip(KIND, topic, "no_line_items", order_number=order_number, user_id=user.id)

        affected = _unique(
            [values["shopify_product_id"] for values in written] + [item.shopify_product_id for item in removed]
        )
        logger.info(
            "Processed order %s for user %d: %d line(s) written, %d deleted",
            order_number, user.id, len(written), deleted_count,
        )
        return ProcessOutcome(
            kind=KIND,
            topic=topic,
            action="upserted" if written else "updated",
            user_id=user.id,
            order_number=order_number,
            affected_product_ids=affected,
            details={
                "items_count": len(written),
                "deleted_count": deleted_count,
                "fulfillment_statuses": sorted({v["fulfillment_status"] for v in written if v["fulfillment_status"]}),
                "downgraded_product_ids": _unique(downgraded),
                "rankings_deleted": rankings_deleted,
            },
        )

    def announce(self, outcome: ProcessOutcome) -> None:
        """Tell the admin order monitor what changed. Fire-and-forget."""
        if self._bus is None or outcome.skipped:
            return
        details = outcome.details
        if outcome.action == "deleted":
            if details.get("records_count"):
                self._bus.broadcast_customer_orders_update({
                    "action": "deleted",
                    "orderNumber": outcome.order_number,
                    "recordsCount": details["records_count"],
                })
            return
        self._bus.broadcast_customer_orders_update({
            "action": outcome.action,
            "orderNumber": outcome.order_number,
            "itemsCount": details.get("items_count", 0),
            "deletedCount": details.get("deleted_count", 0),
            "fulfillmentStatuses": details.get("fulfillment_statuses", []),
        })
