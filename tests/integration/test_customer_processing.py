"""Customer webhooks end to end."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from jerkyrank.auth.sessions import SessionUser
from jerkyrank.db.models import CustomerOrderItem, User
from jerkyrank.services import Services
from tests.conftest import create_user, make_ws, sent_events


async def _user(services: Services, user_id: int) -> User:
    async with services.session_factory() as db:
        user = await db.get(User, user_id)
    assert user is not None
    return user


class TestCreate:
    @pytest.mark.asyncio
    async def test_unknown_customer_becomes_inactive_user(self, services: Services) -> None:
        outcome = await services.dispatcher.handle(
            "customers",
            "customers/create",
            {"id": 6001, "email": "new@example.com", "first_name": "Nia", "last_name": "Park"},
        )

        assert outcome.action == "created"
        user = await _user(services, outcome.user_id)
        assert user.shopify_customer_id == "6001"
        assert user.active is False
        assert user.display_name == "Nia Park"

    @pytest.mark.asyncio
    async def test_customer_without_email_gets_placeholder(self, services: Services) -> None:
        outcome = await services.customers.process("customers/create", {"id": "gid://shopify/Customer/6002"})
        user = await _user(services, outcome.user_id)
        assert user.email == "6002@placeholder.jerky.com"
        assert user.display_name == "6002"


class TestUpdate:
    @pytest.mark.asyncio
    async def test_name_change(self, services: Services) -> None:
        existing = await create_user(services.session_factory, shopify_customer_id="5001")
        await services.caches.user_profile.set(existing.id, {"firstName": "Jane"})
        ws = make_ws()
        client = await services.bus.connect(ws, "jane")
        services.bus.attach_user(
            client,
            SessionUser(existing.id, existing.email, "Jane", "Doe", "Jane Doe", "user", False, False),
        )

        outcome = await services.dispatcher.handle(
            "customers",
            "customers/update",
            {"id": 5001, "email": "jane@example.com", "first_name": "Janet", "last_name": "Doe"},
        )
        await services.bus.drain()

        assert outcome.action == "updated"
        assert outcome.details["changes"] == {"email": False, "firstName": True, "lastName": False}
        user = await _user(services, existing.id)
        assert user.first_name == "Janet"
        assert user.display_name == "Janet Doe"
        assert await services.caches.user_profile.get(existing.id) is None

        [message] = sent_events(ws)
        assert message["event"] == "profile:updated"
        assert message["data"]["firstName"] == "Janet"
        assert message["data"]["displayName"] == "Janet Doe"

    @pytest.mark.asyncio
    async def test_no_changes(self, services: Services) -> None:
        existing = await create_user(services.session_factory, shopify_customer_id="5001")
        await services.caches.user_profile.set(existing.id, {"firstName": "Jane"})

        outcome = await services.dispatcher.handle(
            "customers",
            "customers/update",
            {"id": 5001, "email": "jane@example.com", "first_name": "Jane", "last_name": "Doe"},
        )

        assert outcome.action == "no_changes"
        assert await services.caches.user_profile.get(existing.id) == {"firstName": "Jane"}

    @pytest.mark.asyncio
    async def test_missing_fields_keep_stored_values(self, services: Services) -> None:
        existing = await create_user(services.session_factory, shopify_customer_id="5001")
        outcome = await services.customers.process("customers/update", {"id": 5001, "first_name": "Janet"})
        user = await _user(services, existing.id)
        assert outcome.action == "updated"
        assert user.email == "jane@example.com"
        assert user.last_name == "Doe"

    @pytest.mark.asyncio
    async def test_placeholder_email_replaced_everywhere(self, services: Services) -> None:
        created = await services.customers.process("customers/create", {"id": 6003})
        async with services.session_factory() as db:
            db.add(CustomerOrderItem(
                order_number="#2001",
                order_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
                shopify_product_id="111",
                sku="",
                quantity=1,
                user_id=created.user_id,
                customer_email="6003@placeholder.jerky.com",
                line_item_data={},
            ))
            await db.commit()

        outcome = await services.customers.process("customers/update", {"id": 6003, "email": "real@example.com"})

        assert outcome.user_id == created.user_id
        user = await _user(services, created.user_id)
        assert user.email == "real@example.com"
        async with services.session_factory() as db:
            line = (await db.execute(select(CustomerOrderItem))).scalar_one()
        assert line.customer_email == "real@example.com"

    @pytest.mark.asyncio
    async def test_email_match_links_shopify_id(self, services: Services) -> None:
        existing = await create_user(services.session_factory)
        outcome = await services.customers.process(
            "customers/update", {"id": 5009, "email": "JANE@example.com", "first_name": "Jane", "last_name": "Doe"}
        )
        assert outcome.user_id == existing.id
        assert (await _user(services, existing.id)).shopify_customer_id == "5009"
