"""User lookups and writes driven by Shopify customer data."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.db.models import CustomerOrderItem, User

logger = logging.getLogger(__name__)

PLACEHOLDER_DOMAIN = "@placeholder.jerky.com"


def is_placeholder_email(email: str | None) -> bool:
    return bool(email) and email.endswith(PLACEHOLDER_DOMAIN)  # type: ignore[union-attr]


def placeholder_email(shopify_customer_id: str) -> str:
    return f"{shopify_customer_id}{PLACEHOLDER_DOMAIN}"


def build_display_name(first_name: str | None, last_name: str | None, email: str) -> str:
    if first_name and last_name:
        return f"{first_name} {last_name}".strip()
    return first_name or email.split("@")[0]


async def find_user_by_shopify_id(db: AsyncSession, shopify_customer_id: str) -> User | None:
    result = await db.execute(select(User).where(User.shopify_customer_id == shopify_customer_id))
    return result.scalar_one_or_none()


async def find_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(func.lower(User.email) == email.lower()).limit(1))
    return result.scalar_one_or_none()


async def resolve_user(
    db: AsyncSession,
    shopify_customer_id: str | None,
    email: str | None,
) -> User | None:
    """Find a user by Shopify id, then by email. Never creates one.

    A user found by id whose email is still a placeholder takes the real
    email (and so do their order lines). A user found by email gets the
    Shopify id linked if it had none.
    """
    if shopify_customer_id:
        user = await find_user_by_shopify_id(db, shopify_customer_id)
        if user is not None:
            if email and is_placeholder_email(user.email) and email != user.email:
                user.email = email
                user.updated_at = datetime.now(timezone.utc)
                await db.execute(
                    update(CustomerOrderItem)
                    .where(CustomerOrderItem.user_id == user.id)
                    .values(customer_email=email)
                )
                logger.info("Replaced placeholder email for user %d", user.id)
            return user

    if email:
        user = await find_user_by_email(db, email)
        if user is not None:
            if shopify_customer_id and not user.shopify_customer_id:
                user.shopify_customer_id = shopify_customer_id
                user.updated_at = datetime.now(timezone.utc)
                logger.info("Linked Shopify customer %s to user %d", shopify_customer_id, user.id)
            return user

    return None


async def create_user_from_customer(
    db: AsyncSession,
    shopify_customer_id: str,
    email: str | None,
    first_name: str | None,
    last_name: str | None,
    shopify_created_at: datetime | None,
) -> User:
    """Create an inactive user for a customer who has never logged in."""
    email = email or placeholder_email(shopify_customer_id)
    now = datetime.now(timezone.utc)
    user = User(
        shopify_customer_id=shopify_customer_id,
        email=email,
        first_name=first_name,
        last_name=last_name,
        display_name=build_display_name(first_name, last_name, email),
        role="user",
        active=False,
        shopify_created_at=shopify_created_at,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    await db.flush()
    return user
