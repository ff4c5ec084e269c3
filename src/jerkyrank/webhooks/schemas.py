"""Shopify webhook payload schemas.

Only the fields the processors read are declared; everything else is kept
as extra data. Ids are normalised to strings and quantities must be real
non-negative integers, never coerced.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_id(value: Any) -> str | None:  # noqa: ANN401
    """Accept ints, numeric strings and ``gid://shopify/<Type>/<n>`` ids."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("id must be a string or integer")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("gid://"):
            text = text.rsplit("/", 1)[-1]
        return text or None
    raise ValueError(f"id must be a string or integer, got {type(value).__name__}")


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class LineItem(_Payload):
    id: str | None = None
    product_id: str | None = None
    variant_id: str | None = None
    title: str | None = None
    variant_title: str | None = None
    sku: str | None = None
    quantity: int = 1
    price: Any = None
    fulfillable_quantity: int | None = None
    fulfillment_status: str | None = None

    @field_validator("id", "product_id", "variant_id", mode="before")
    @classmethod
    def _ids(cls, v: Any) -> str | None:  # noqa: ANN401
        return normalize_id(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v: Any) -> int:  # noqa: ANN401
        if v is None:
            return 1
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError(f"quantity must be an integer, got {v!r}")
        if v < 0:
            raise ValueError(f"quantity must not be negative, got {v}")
        return v

    @field_validator("sku", mode="before")
    @classmethod
    def _sku(cls, v: Any) -> str | None:  # noqa: ANN401
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    def line_item_data(self) -> dict[str, Any]:
        """Opaque copy stored with the order line."""
        return self.model_dump(mode="json")


class FulfillmentLine(_Payload):
    id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str | None:  # noqa: ANN401
        return normalize_id(v)


class Fulfillment(_Payload):
    shipment_status: str | None = None
    line_items: list[FulfillmentLine] = Field(default_factory=list)


class CustomerRef(_Payload):
    id: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str | None:  # noqa: ANN401
        return normalize_id(v)


class OrderPayload(_Payload):
    id: str | None = None
    name: str | None = None
    order_number: str | None = None
    email: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None
    fulfillment_status: str | None = None
    customer: CustomerRef | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    fulfillments: list[Fulfillment] = Field(default_factory=list)

    @field_validator("id", "order_number", mode="before")
    @classmethod
    def _ids(cls, v: Any) -> str | None:  # noqa: ANN401
        return normalize_id(v)

    @property
    def reference(self) -> str | None:
        """The human order number, e.g. ``#1001``."""
        return self.name or self.order_number

    @property
    def customer_id(self) -> str | None:
        return self.customer.id if self.customer else None

    @property
    def customer_email(self) -> str | None:
        return (self.customer.email if self.customer else None) or self.email

    def fulfillment_status_for(self, item: LineItem) -> str | None:
        """``delivered`` once a fulfillment containing the line is delivered."""
        for fulfillment in self.fulfillments:
            if fulfillment.shipment_status != "delivered":
                continue
            if any(line.id is not None and line.id == item.id for line in fulfillment.line_items):
                return "delivered"
        return item.fulfillment_status or self.fulfillment_status


class ProductPayload(_Payload):
    id: str
    title: str | None = None
    vendor: str | None = None
    tags: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str | None:  # noqa: ANN401
        return normalize_id(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> str | None:  # noqa: ANN401
        if v is None:
            return None
        if isinstance(v, list):
            return ", ".join(str(t) for t in v)
        return str(v)


class CustomerPayload(_Payload):
    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    created_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str | None:  # noqa: ANN401
        return normalize_id(v)
