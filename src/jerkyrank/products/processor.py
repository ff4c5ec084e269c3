"""Product webhooks: derive animal and flavor facts for rankable products."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.db.models import ProductMetadata
from jerkyrank.errors import UnknownTopicError
from jerkyrank.products.animal import extract_animal
from jerkyrank.products.flavor import extract_flavors
from jerkyrank.products.repository import (
    cleanup_orphaned_products,
    get_metadata,
    metadata_to_dict,
    upsert_product_metadata,
)
from jerkyrank.webhooks.outcome import ProcessOutcome
from jerkyrank.webhooks.schemas import ProductPayload

if TYPE_CHECKING:
    from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)

KIND = "products"
RANKABLE_TAG = "rankable"
NOT_RANKABLE_REASON = 'Product does not have "rankable" tag'
INVENTORY_ONLY_REASON = "inventory only"

_TAG_SPLIT = re.compile(r"[,\s]+")


def has_rankable_tag(tags: str | None) -> bool:
    """True when ``rankable`` appears as its own comma- or space-separated token."""
    if not tags:
        return False
    return RANKABLE_TAG in {token.lower() for token in _TAG_SPLIT.split(tags) if token}


def important_fields_changed(stored: ProductMetadata, product: ProductPayload) -> bool:
    """Title or vendor differ from what is stored.

    Shopify sends ``products/update`` for every inventory movement; those
    payloads repeat the title and vendor unchanged.
    """
    return (product.title or None) != (stored.title or None) or (product.vendor or None) != (stored.vendor or None)


def derive_metadata(product: ProductPayload) -> dict[str, Any]:
    """Catalog fields plus the animal and flavor facts extracted from the title."""
    animal = extract_animal(product.title)
    flavors = extract_flavors(product.title)
    return {
        "title": product.title,
        "vendor": product.vendor,
        "tags": product.tags,
        "shopify_created_at": product.created_at,
        "animal_type": animal.type if animal else None,
        "animal_display": animal.display if animal else None,
        "animal_icon": animal.icon if animal else None,
        "primary_flavor": flavors.primary if flavors else None,
        "secondary_flavors": list(flavors.secondary) if flavors else None,
        "flavor_display": flavors.display if flavors else None,
        "flavor_icon": flavors.icon if flavors else None,
    }


class ProductProcessor:
    """Handles ``products/create``, ``products/update`` and ``products/delete``."""

    kind = KIND
    actions = ("create", "update", "delete")

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

        product = ProductPayload.model_validate(payload)
        if action == "delete":
            # Rows are removed by the orphan sweep on the next catalog sync.
            logger.info("Product %s deleted in Shopify, left for the orphan sweep", product.id)
            return ProcessOutcome(
                kind=KIND,
                topic=topic,
                action="noted",
                product_id=product.id,
                details={"title": product.title},
            )

        async with self._session_factory() as db:
            stored = await get_metadata(db, product.id)
            forced = stored is not None and bool(stored.force_rankable)

            if not forced and not has_rankable_tag(product.tags):
                logger.info("Skipping product %s (%s): not tagged rankable", product.id, product.title)
                return ProcessOutcome.skip(
                    KIND, topic, NOT_RANKABLE_REASON, product_id=product.id, details={"title": product.title}
                )

            if action == "update" and stored is not None:
                try:
                    changed = important_fields_changed(stored, product)
                except Exception:
                    logger.warning("Change analysis failed for product %s, processing anyway", product.id, exc_info=True)
                    changed = True
                if not changed:
                    logger.debug("Product %s update touched inventory only, skipping", product.id)
                    return ProcessOutcome.skip(
                        KIND, topic, INVENTORY_ONLY_REASON, product_id=product.id, details={"title": product.title}
                    )

            row, created = await upsert_product_metadata(db, product.id, derive_metadata(product))
            metadata = metadata_to_dict(row)
            await db.commit()

        logger.info("%s metadata for product %s (%s)", "Created" if created else "Updated", product.id, product.title)
        return ProcessOutcome(
            kind=KIND,
            topic=topic,
            action="created" if created else "updated",
            product_id=product.id,
            metadata=metadata,
            details={"title": product.title},
        )

    async def sweep_orphans(self, current_product_ids: list[str]) -> ProcessOutcome:
        """Delete metadata for products missing from a fresh catalog listing."""
        async with self._session_factory() as db:
            removed = await cleanup_orphaned_products(db, current_product_ids)
            await db.commit()
        return ProcessOutcome(
            kind=KIND,
            topic="products/sync",
            action="swept",
            affected_product_ids=removed,
            details={"removed_count": len(removed), "current_count": len(current_product_ids)},
        )

    def announce(self, outcome: ProcessOutcome) -> None:
        """Report every product outcome to the admin room. Fire-and-forget."""
        if self._bus is None or outcome.action == "swept":
            return
        data: dict[str, Any] = {
            "action": outcome.action,
            "productId": outcome.product_id,
            "title": outcome.details.get("title"),
            "topic": outcome.topic,
        }
        if outcome.reason:
            data["reason"] = outcome.reason
        self._bus.broadcast_product_webhook_update(data)
