"""Product metadata persistence."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.db.models import ProductMetadata

logger = logging.getLogger(__name__)

# Refreshed from every webhook.
CATALOG_FIELDS = ("title", "vendor", "tags", "shopify_created_at")
# Derived from the title, but editable by admins; only NULLs are filled in.
DERIVED_FIELDS = (
    "animal_type",
    "animal_display",
    "animal_icon",
    "primary_flavor",
    "secondary_flavors",
    "flavor_display",
    "flavor_icon",
)


def metadata_to_dict(row: ProductMetadata) -> dict[str, Any]:
    """Cache/wire shape of a metadata row."""
    return {
        "shopify_product_id": row.shopify_product_id,
        "title": row.title,
        "vendor": row.vendor,
        "animal_type": row.animal_type,
        "animal_display": row.animal_display,
        "animal_icon": row.animal_icon,
        "primary_flavor": row.primary_flavor,
        "secondary_flavors": list(row.secondary_flavors or []),
        "flavor_display": row.flavor_display,
        "flavor_icon": row.flavor_icon,
        "force_rankable": bool(row.force_rankable),
        "shopify_created_at": row.shopify_created_at.isoformat() if row.shopify_created_at else None,
    }


async def get_metadata(db: AsyncSession, shopify_product_id: str) -> ProductMetadata | None:
    result = await db.execute(
        select(ProductMetadata).where(ProductMetadata.shopify_product_id == shopify_product_id)
    )
    return result.scalar_one_or_none()


async def get_all_metadata(db: AsyncSession) -> dict[str, dict[str, Any]]:
    result = await db.execute(select(ProductMetadata))
    return {row.shopify_product_id: metadata_to_dict(row) for row in result.scalars()}


async def upsert_product_metadata(
    db: AsyncSession,
    shopify_product_id: str,
    values: dict[str, Any],
) -> tuple[ProductMetadata, bool]:
    """Insert or merge metadata. Returns (row, created).

    Catalog fields always take the incoming value. Derived fields are only
    written where the stored value is NULL, so manual edits survive.
    """
    existing = await get_metadata(db, shopify_product_id)
    now = datetime.now(timezone.utc)

    if existing is None:
        row = ProductMetadata(shopify_product_id=shopify_product_id, updated_at=now, **values)
        db.add(row)
        await db.flush()
        return row, True

    preserved: list[str] = []
    filled: list[str] = []
    for key, incoming in values.items():
        if key in CATALOG_FIELDS:
            if incoming is not None:
                setattr(existing, key, incoming)
            continue
        if getattr(existing, key) is None:
            if incoming is not None:
                setattr(existing, key, incoming)
                filled.append(key)
        else:
            preserved.append(key)

    if preserved:
        logger.debug("Preserving manual edits for %s: %s", shopify_product_id, ", ".join(preserved))
    if filled:
        logger.info("Filled NULL metadata fields for %s: %s", shopify_product_id, ", ".join(filled))

    existing.updated_at = now
    await db.flush()
    return existing, False


async def cleanup_orphaned_products(db: AsyncSession, current_product_ids: list[str]) -> list[str]:
    """Delete metadata for products no longer in the catalog.

    An empty list is treated as a failed catalog fetch and deletes nothing.
    """
    if not current_product_ids:
        logger.warning("Orphan sweep called with an empty product list, skipping")
        return []

    result = await db.execute(
        select(ProductMetadata.shopify_product_id).where(
            ProductMetadata.shopify_product_id.not_in(current_product_ids)
        )
    )
    orphaned = [row[0] for row in result.all()]
    if orphaned:
        await db.execute(delete(ProductMetadata).where(ProductMetadata.shopify_product_id.in_(orphaned)))
        logger.info("Removed %d orphaned product metadata rows", len(orphaned))
    return orphaned
