"""Domain model, state machine and ports for orders.

This module contains the order aggregate (``Order`` with its ``OrderItem``
lines and ``Address`` records), the status state machine, the immutable
``OrderEvent`` snapshot published to downstream consumers, and the protocol
definitions (ports) the use cases depend on: ``OrderRepository`` and
``EventPublisher``. Nothing here performs I/O.

Amounts are ``Decimal`` values with two fractional digits. Totals are always
derived from the items and compared exactly; there is no tolerance.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from types import MappingProxyType
from collections.abc import Mapping
from typing import List, Optional, Protocol

from .errors import InvalidStatusTransition, OperationCancelled, ValidationError


CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_CURRENCY = "USD"
STATUS_CHANGE_REASON_KEY = "status_change_reason"
NIL_ID = uuid.UUID(int=0)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the order lifecycle states."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


# Allowed target statuses per current status. Cancelled and refunded are
# terminal; delivered still allows a refund.
TRANSITIONS: Mapping[OrderStatus, frozenset] = MappingProxyType({
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
})


class AddressType(str, Enum):
    SHIPPING = "shipping"
    BILLING = "billing"


class EventType(str, Enum):
    """Domain event types published for an order."""

    CREATED = "order.created"
    CONFIRMED = "order.confirmed"
    CANCELLED = "order.cancelled"
    SHIPPED = "order.shipped"
    DELIVERED = "order.delivered"
    REFUNDED = "order.refunded"
    STATUS_CHANGED = "order.status_changed"

    @classmethod
    def for_status(cls, status: OrderStatus) -> "EventType":
        """Map a target status to the event announcing it.

        The mapping is by target status only; statuses without a dedicated
        event (pending, processing) fall back to ``STATUS_CHANGED``.
        """
        return _STATUS_EVENTS.get(status, cls.STATUS_CHANGED)


_STATUS_EVENTS = {
    OrderStatus.CONFIRMED: EventType.CONFIRMED,
    OrderStatus.CANCELLED: EventType.CANCELLED,
    OrderStatus.SHIPPED: EventType.SHIPPED,
    OrderStatus.DELIVERED: EventType.DELIVERED,
    OrderStatus.REFUNDED: EventType.REFUNDED,
}


# ---- Value helpers ----
def to_money(value) -> Decimal:
    """Convert ``value`` to a two-digit ``Decimal``.

    Floats go through ``str`` so ``10.99`` stays ``10.99`` instead of its
    binary approximation.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValidationError(f"invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"invalid amount: {value!r}") from None
    if not amount.is_finite():
        raise ValidationError(f"invalid amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def check_metadata(metadata: Mapping, path: str = "metadata") -> None:
    """Ensure metadata only holds strings, numbers, booleans and mappings.

    Raises:
        ValidationError: On a non-string key or an unsupported value kind.
    """
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValidationError(f"{path} keys must be strings, got {key!r}")
        if isinstance(value, Mapping):
            check_metadata(value, f"{path}.{key}")
        elif not isinstance(value, (str, bool, int, float, Decimal)):
            raise ValidationError(
                f"{path}.{key} has unsupported type {type(value).__name__}"
            )


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---- Call context ----
@dataclass(frozen=True)
class CallContext:
    """Cancellation and deadline signal threaded through every use case.

    Attributes:
        deadline: ``time.monotonic()`` value after which the call must
            stop, or None for no deadline.
        cancel_event: Optional flag another thread can set to cancel.
        request_id: Correlation id for logs and outgoing headers.
    """

    deadline: Optional[float] = None
    cancel_event: Optional[threading.Event] = None
    request_id: str = "-"

    @classmethod
    def with_timeout(cls, seconds: float | None, **kwargs) -> "CallContext":
        deadline = time.monotonic() + seconds if seconds else None
        return cls(deadline=deadline, **kwargs)

    def remaining(self) -> float | None:
        """Seconds left before the deadline (never negative), or None."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """Raise ``OperationCancelled`` if the call must not continue."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled("operation cancelled by caller")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise OperationCancelled("deadline exceeded")


# ---- Entities ----
@dataclass(frozen=True)
class OrderItem:
    """A single line item owned by an order.

    Items are immutable; the order replaces its list when lines change.
    Duplicate ``product_id`` values are allowed as separate lines.

    Attributes:
        id: Identifier unique within the order.
        product_id: Reference to the catalogue product.
        name: Display name captured at order time.
        price: Unit price with two fractional digits.
        quantity: Number of units (> 0).
        total: ``price * quantity``.
    """

    id: uuid.UUID
    product_id: uuid.UUID
    name: str
    price: Decimal
    quantity: int
    total: Decimal

    def validate(self) -> None:
        if _blank(self.id):
            raise ValidationError("item ID cannot be empty")
        if _blank(self.product_id):
            raise ValidationError("product ID cannot be empty")
        if not self.name:
            raise ValidationError("item name cannot be empty")
        if self.price <= 0:
            raise ValidationError("item price must be greater than zero")
        if self.quantity <= 0:
            raise ValidationError("item quantity must be greater than zero")
        expected = self.price * self.quantity
        if self.total != expected:
            raise ValidationError(
                f"item total ({self.total}) doesn't match price * quantity ({expected})"
            )


@dataclass
class Address:
    """Shipping or billing address owned by an order."""

    street: str
    city: str
    country: str
    zip_code: str
    state: str = ""
    type: AddressType = AddressType.SHIPPING
    id: uuid.UUID | None = None


@dataclass(frozen=True)
class OrderEvent:
    """Immutable point-in-time projection of an order.

    ``data`` is read-only; use ``with_data`` to derive an event carrying
    extra contextual fields (prior status, reason, ...).
    """

    event_type: EventType
    event_id: uuid.UUID
    order_id: uuid.UUID
    customer_id: uuid.UUID
    status: OrderStatus
    total_amount: Decimal
    currency: str
    timestamp: datetime
    data: Mapping = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        if not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def with_data(self, **fields) -> "OrderEvent":
        return replace(self, data={**self.data, **fields})

    @property
    def key(self) -> str:
        """Transport key; same-order events share it to keep them ordered."""
        return str(self.order_id)

    def headers(self) -> dict:
        return {
            "event-type": self.event_type.value,
            "event-id": str(self.event_id),
            "customer-id": str(self.customer_id),
            "content-type": "application/json",
            "timestamp": self.timestamp.isoformat(),
        }

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "event_id": str(self.event_id),
            "order_id": str(self.order_id),
            "customer_id": str(self.customer_id),
            "status": self.status.value,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "timestamp": self.timestamp.isoformat(),
            "data": _plain(self.data),
        }


@dataclass
class Order:
    """The order aggregate root.

    Mutate only through the methods below: they keep ``total_amount`` equal
    to the sum of the item totals and refresh ``updated_at``.

    Attributes:
        id: Globally unique identifier assigned at creation.
        customer_id: Reference to the (external) customer.
        email: Contact email.
        status: Current ``OrderStatus``.
        total_amount: Derived sum of item totals.
        currency: 3-letter currency code.
        items: Owned ``OrderItem`` lines.
        shipping_address: Optional shipping ``Address``.
        billing_address: Optional billing ``Address``.
        metadata: Free-form key/value data.
        created_at: Creation time (UTC).
        updated_at: Last mutation time (UTC).
        version: Optimistic concurrency version, bumped by each stored write.
    """

    id: uuid.UUID
    customer_id: uuid.UUID
    email: str
    status: OrderStatus = OrderStatus.PENDING
    total_amount: Decimal = ZERO
    currency: str = DEFAULT_CURRENCY
    items: List[OrderItem] = field(default_factory=list)
    shipping_address: Address | None = None
    billing_address: Address | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    version: int = 1

    @classmethod
    def new(cls, customer_id: uuid.UUID, email: str, currency: str | None = None) -> "Order":
        """Create a fresh pending order with a new identifier."""
        now = _now()
        return cls(
            id=uuid.uuid4(),
            customer_id=customer_id,
            email=email,
            currency=currency or DEFAULT_CURRENCY,
            created_at=now,
            updated_at=now,
        )

    # -- items --
    def add_item(self, product_id: uuid.UUID, name: str, price, quantity: int) -> OrderItem:
        """Append a line item and recompute the total.

        Raises:
            ValidationError: If price or quantity is not positive.
        """
        amount = to_money(price)
        if amount <= 0:
            raise ValidationError("item price must be greater than zero")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("item quantity must be greater than zero")
        item = OrderItem(
            id=uuid.uuid4(),
            product_id=product_id,
            name=name,
            price=amount,
            quantity=quantity,
            total=amount * quantity,
        )
        self.items.append(item)
        self._recalculate_total()
        self._touch()
        return item

    def remove_item(self, item_id: uuid.UUID) -> bool:
        """Remove the item with ``item_id``; False when there is none."""
        for index, item in enumerate(self.items):
            if item.id == item_id:
                del self.items[index]
                self._recalculate_total()
                self._touch()
                return True
        return False

    @property
    def item_count(self) -> int:
        """Total units across all lines."""
        return sum(item.quantity for item in self.items)

    # -- state machine --
    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in TRANSITIONS.get(self.status, frozenset())

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: OrderStatus) -> None:
        """Move to ``new_status`` if the state machine allows it.

        Raises:
            InvalidStatusTransition: The order is left unchanged.
        """
        if not self.can_transition_to(new_status):
            raise InvalidStatusTransition(self.status, new_status)
        self.status = new_status
        self._touch()

    # -- addresses / metadata --
    def set_shipping_address(self, address: Address) -> None:
        self.shipping_address = self._own_address(address, AddressType.SHIPPING)
        self._touch()

    def set_billing_address(self, address: Address) -> None:
        self.billing_address = self._own_address(address, AddressType.BILLING)
        self._touch()

    def apply_metadata(self, metadata: Mapping) -> None:
        check_metadata(metadata)
        self.metadata.update(metadata)

    # -- invariants --
    def validate(self) -> None:
        """Check the aggregate before it is persisted.

        Raises:
            ValidationError: With the first violation found.
        """
        if _blank(self.id):
            raise ValidationError("order ID cannot be empty")
        if _blank(self.customer_id):
            raise ValidationError("customer ID cannot be empty")
        if not self.email:
            raise ValidationError("email cannot be empty")
        if not self.items:
            raise ValidationError("order must have at least one item")
        if self.total_amount <= 0:
            raise ValidationError("total amount must be greater than zero")
        for index, item in enumerate(self.items):
            try:
                item.validate()
            except ValidationError as exc:
                raise ValidationError(f"item {index}: {exc.message}") from None
        expected = sum((item.total for item in self.items), ZERO)
        if self.total_amount != expected:
            raise ValidationError(
                f"total amount ({self.total_amount}) doesn't match sum of items ({expected})"
            )

    def to_event(self, event_type: EventType, **data) -> OrderEvent:
        """Snapshot the order as an event of ``event_type``.

        ``data`` always holds the email and item count; keyword arguments
        add further contextual fields.
        """
        return OrderEvent(
            event_type=event_type,
            event_id=uuid.uuid4(),
            order_id=self.id,
            customer_id=self.customer_id,
            status=self.status,
            total_amount=self.total_amount,
            currency=self.currency,
            timestamp=_now(),
            data={"email": self.email, "item_count": self.item_count, **data},
        )

    def _recalculate_total(self) -> None:
        self.total_amount = sum((item.total for item in self.items), ZERO)

    def _touch(self) -> None:
        self.updated_at = _now()

    @staticmethod
    def _own_address(address: Address, kind: AddressType) -> Address:
        return replace(address, id=uuid.uuid4(), type=kind)


# ---- Ports (DIP) ----
SORT_FIELDS = ("created_at", "updated_at", "total_amount", "status")
SORT_ORDERS = ("asc", "desc")
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass
class OrderFilters:
    """Filters, sorting and pagination for listing orders.

    ``email`` matches as a case-insensitive substring; amount and date
    bounds are inclusive.
    """

    customer_id: uuid.UUID | None = None
    status: OrderStatus | None = None
    email: str | None = None
    currency: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    sort_by: str = "created_at"
    sort_order: str = "desc"


class OrderRepository(Protocol):
    """Port describing order persistence.

    Implementations must make ``create`` atomic and give ``update`` at
    least read-modify-write atomicity per order id (see ``version``).
    Storage failures surface as ``PersistenceError``.
    """

    def create(self, order: Order, ctx: CallContext | None = None) -> None:
        """Persist header, items and addresses as one unit."""
        raise NotImplementedError()

    def get_by_id(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> Order:
        """Return the full aggregate or raise ``OrderNotFound``."""
        raise NotImplementedError()

    def update(self, order: Order, ctx: CallContext | None = None) -> None:
        """Overwrite header fields; raise ``OrderNotFound`` or ``ConcurrentModification``."""
        raise NotImplementedError()

    def update_status(self, order_id: uuid.UUID, status: OrderStatus,
                      ctx: CallContext | None = None) -> None:
        raise NotImplementedError()

    def delete(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> None:
        """Logically delete (cancel) a non-terminal, non-delivered order."""
        raise NotImplementedError()

    def list(self, filters: OrderFilters, ctx: CallContext | None = None) -> List[Order]:
        raise NotImplementedError()

    def count(self, filters: OrderFilters, ctx: CallContext | None = None) -> int:
        raise NotImplementedError()

    def exists(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> bool:
        raise NotImplementedError()


class EventPublisher(Protocol):
    """Port describing event emission.

    Implementations publish keyed by ``event.key`` (the order id) so events
    of one order stay ordered, and raise ``PublishError`` on failure.
    """

    def publish(self, event: OrderEvent, ctx: CallContext | None = None) -> None:
        raise NotImplementedError()


def _plain(value):
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _blank(identifier) -> bool:
    return identifier is None or identifier == "" or identifier == NIL_ID
