"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API
and the helpers that render domain objects as JSON-ready dicts. Schemas
check shape and types only; business rules (positive prices, email
format, state machine) live in the use cases and the domain.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Address, Order, OrderFilters, OrderItem, OrderStatus
from .usecases import AddressData, CreateOrderCommand, ItemLine


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_id: Catalogue product reference.
        name: Display name captured at order time.
        price: Unit price; floats and strings are accepted and converted to
            ``Decimal``.
        quantity: Units requested.
    """

    product_id: uuid.UUID
    name: str
    price: Decimal
    quantity: int


class AddressIn(BaseModel):
    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = ""
    country: str = Field(min_length=1, max_length=100)
    zip_code: str = Field(min_length=1, max_length=20)

    def to_data(self) -> AddressData:
        return AddressData(
            street=self.street,
            city=self.city,
            state=self.state,
            country=self.country,
            zip_code=self.zip_code,
        )


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        customer_id: Customer placing the order.
        email: Contact email (format checked by the use case).
        items: List of ``OrderItemIn`` lines.
        currency: Optional 3-letter code, normalized to uppercase.
        metadata: Free-form key/value data.
        shipping_address: Optional ``AddressIn``.
        billing_address: Optional ``AddressIn``.
    """

    model_config = ConfigDict(extra="forbid")

    customer_id: uuid.UUID
    email: str
    items: list[OrderItemIn]
    currency: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    shipping_address: Optional[AddressIn] = None
    billing_address: Optional[AddressIn] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the currency code.

        Raises:
            ValueError: When the code is not three letters.
        """
        if v is None or v == "":
            return None
        v2 = v.upper()
        if len(v2) != 3 or not v2.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return v2

    def to_command(self) -> CreateOrderCommand:
        return CreateOrderCommand(
            customer_id=self.customer_id,
            email=self.email,
            items=[
                ItemLine(product_id=i.product_id, name=i.name, price=i.price, quantity=i.quantity)
                for i in self.items
            ],
            currency=self.currency,
            metadata=self.metadata,
            shipping_address=self.shipping_address.to_data() if self.shipping_address else None,
            billing_address=self.billing_address.to_data() if self.billing_address else None,
        )


class UpdateStatusDTO(BaseModel):
    """Schema for a status change; ``new_status`` is checked by the use case."""

    new_status: str
    reason: Optional[str] = None


class ListOrdersQuery(BaseModel):
    """Query-string filters for listing orders.

    Missing or empty parameters mean "no filter"; defaults and bounds for
    pagination and sorting are applied by the use case.
    """

    customer_id: Optional[uuid.UUID] = None
    status: Optional[OrderStatus] = None
    email: Optional[str] = None
    currency: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 0
    offset: int = 0
    sort_by: Optional[str] = None
    sort_order: Optional[str] = None

    @classmethod
    def from_query(cls, params) -> "ListOrdersQuery":
        """Build from a ``QueryDict``, dropping blank values."""
        return cls.model_validate({k: v for k, v in params.items() if v != ""})

    def to_filters(self) -> OrderFilters:
        return OrderFilters(
            customer_id=self.customer_id,
            status=self.status,
            email=self.email,
            currency=self.currency,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            date_from=self.date_from,
            date_to=self.date_to,
            limit=self.limit,
            offset=self.offset,
            sort_by=self.sort_by or "created_at",
            sort_order=self.sort_order or "desc",
        )


# ---- Rendering ----
def item_to_dict(item: OrderItem) -> dict:
    return {
        "id": str(item.id),
        "product_id": str(item.product_id),
        "name": item.name,
        "price": str(item.price),
        "quantity": item.quantity,
        "total": str(item.total),
    }


def address_to_dict(address: Address | None) -> dict | None:
    if address is None:
        return None
    return {
        "id": str(address.id) if address.id else None,
        "type": address.type.value,
        "street": address.street,
        "city": address.city,
        "state": address.state,
        "country": address.country,
        "zip_code": address.zip_code,
    }


def order_to_dict(order: Order) -> dict:
    """Render an order with amounts as decimal strings."""
    return {
        "id": str(order.id),
        "customer_id": str(order.customer_id),
        "email": order.email,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "items": [item_to_dict(i) for i in order.items],
        "shipping_address": address_to_dict(order.shipping_address),
        "billing_address": address_to_dict(order.billing_address),
        "metadata": order.metadata,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
        "version": order.version,
    }
