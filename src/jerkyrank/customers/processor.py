"""Customer webhooks: keep user profiles in step with Shopify."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.customers.repository import (
    build_display_name,
    create_user_from_customer,
    resolve_user,
)
from jerkyrank.errors import UnknownTopicError
from jerkyrank.webhooks.outcome import ProcessOutcome
from jerkyrank.webhooks.schemas import CustomerPayload

if TYPE_CHECKING:
    from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)

KIND = "customers"
PROFILE_FIELDS = ("email", "first_name", "last_name")


def _camel(field_name: str) -> str:
    head, *rest = field_name.split("_")
    return head + "".join(part.title() for part in rest)


class CustomerProcessor:
    """Handles ``customers/create`` and ``customers/update``."""

    kind = KIND
    actions = ("create", "update")

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: NotificationBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus

    async def process(self, topic: str, payload: dict[str, Any]) -> ProcessOutcome:
        if topic.split("/", 1)[-1] not in self.actions:
            raise UnknownTopicError(topic)

        customer = CustomerPayload.model_validate(payload)
        async with self._session_factory() as db:
            user = await resolve_user(db, customer.id, customer.email)
            if user is None:
                user = await create_user_from_customer(
                    db,
                    customer.id,
                    customer.email,
                    customer.first_name,
                    customer.last_name,
                    customer.created_at,
                )
                await db.commit()
                logger.info("Created inactive user %d for Shopify customer %s", user.id, customer.id)
                return ProcessOutcome(
                    kind=KIND,
                    topic=topic,
                    action="created",
                    user_id=user.id,
                    details={"shopify_customer_id": customer.id, "email": user.email, "changes": {}},
                )

            desired = {
                "email": customer.email or user.email,
                "first_name": customer.first_name or user.first_name,
                "last_name": customer.last_name or user.last_name,
            }
            changes = {_camel(name): desired[name] != getattr(user, name) for name in PROFILE_FIELDS}
            if customer.created_at is not None and user.shopify_created_at is None:
                user.shopify_created_at = customer.created_at

            if not any(changes.values()):
                # The id link or placeholder upgrade done by resolve_user still counts.
                await db.commit()
                logger.info("Customer %s already up to date", customer.id)
                return ProcessOutcome(
                    kind=KIND,
                    topic=topic,
                    action="no_changes",
                    user_id=user.id,
                    details={"shopify_customer_id": customer.id, "changes": changes},
                )

            for name in PROFILE_FIELDS:
                setattr(user, name, desired[name])
            user.display_name = build_display_name(user.first_name, user.last_name, user.email)
            user.updated_at = datetime.now(timezone.utc)
            profile = {
                "firstName": user.first_name,
                "lastName": user.last_name,
                "email": user.email,
                "displayName": user.display_name,
            }
            await db.commit()

        logger.info("Updated user %d from Shopify customer %s", user.id, customer.id)
        return ProcessOutcome(
            kind=KIND,
            topic=topic,
            action="updated",
            user_id=user.id,
            details={"shopify_customer_id": customer.id, "changes": changes, "profile": profile},
        )

    def announce(self, outcome: ProcessOutcome) -> None:
        """Profile push to the user plus an admin-room report. Fire-and-forget."""
        if self._bus is None or outcome.user_id is None:
            return
        if outcome.action == "updated":
            self._bus.emit_profile_updated(outcome.user_id, outcome.details.get("profile", {}))
        self._bus.broadcast_customer_webhook_update({
            "action": outcome.action,
            "userId": outcome.user_id,
            "shopifyCustomerId": outcome.details.get("shopify_customer_id"),
            "changes": outcome.details.get("changes", {}),
        })
