"""Application use cases for the order lifecycle.

Each use case receives its collaborators (an ``OrderRepository`` and, where
it emits events, an ``EventPublisher``) at construction time and exposes a
single ``execute`` method.

Write flows follow the same protocol: validate, mutate the in-memory
aggregate, persist through the repository, and only then build and publish
the domain event. Publishing is best-effort: the stored order is the source
of truth, so a publish failure is logged and never fails the use case nor
rolls back what was persisted. Recovering missed events is left to a
reconciliation process outside this module.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .domain import (
    DEFAULT_LIMIT,
    MAX_LIMIT,
    NIL_ID,
    SORT_FIELDS,
    SORT_ORDERS,
    STATUS_CHANGE_REASON_KEY,
    Address,
    CallContext,
    EventPublisher,
    EventType,
    Order,
    OrderEvent,
    OrderFilters,
    OrderRepository,
    OrderStatus,
    check_metadata,
    to_money,
)
from .errors import InvalidStatusTransition, OrderError, ValidationError

logger = logging.getLogger("orders")


# ---- Commands / results ----
@dataclass
class ItemLine:
    product_id: uuid.UUID
    name: str
    price: Decimal
    quantity: int


@dataclass
class AddressData:
    street: str
    city: str
    country: str
    zip_code: str
    state: str = ""

    def to_address(self) -> Address:
        return Address(
            street=self.street,
            city=self.city,
            country=self.country,
            zip_code=self.zip_code,
            state=self.state or "",
        )


@dataclass
class CreateOrderCommand:
    customer_id: uuid.UUID
    email: str
    items: List[ItemLine]
    currency: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    shipping_address: Optional[AddressData] = None
    billing_address: Optional[AddressData] = None


@dataclass
class CreateOrderResult:
    order: Order
    message: str = "Order created successfully"


@dataclass
class UpdateStatusResult:
    order: Order
    old_status: OrderStatus
    new_status: OrderStatus
    message: str


@dataclass
class ListOrdersResult:
    orders: List[Order]
    total_count: int
    limit: int
    offset: int


# ---- Helpers ----
def is_valid_email(email: str) -> bool:
    """Lightweight syntactic check: one ``@`` and a dotted domain of 3+ chars."""
    if not email or len(email) < 5 or "@" not in email:
        return False
    parts = email.split("@")
    return len(parts) == 2 and bool(parts[0]) and len(parts[1]) >= 3 and "." in parts[1]


def _context(ctx: CallContext | None) -> CallContext:
    return ctx if ctx is not None else CallContext()


def _require_id(value, name: str) -> None:
    if value is None or value == NIL_ID or value == "":
        raise ValidationError(f"{name} is required")


def _parse_status(value) -> OrderStatus:
    if value is None or value == "":
        raise ValidationError("new_status is required")
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"invalid status: {value}") from None


def _publish(publisher: EventPublisher, event: OrderEvent, ctx: CallContext) -> bool:
    """Publish ``event``; log and swallow any failure.

    Returns:
        bool: True when the transport accepted the event.
    """
    fields = {
        "order_id": str(event.order_id),
        "event_type": event.event_type.value,
        "event_id": str(event.event_id),
    }
    try:
        publisher.publish(event, ctx=ctx)
    except Exception as exc:
        logger.error(
            "failed to publish order event",
            extra={**fields, "error": str(exc), "error_kind": getattr(exc, "kind", type(exc).__name__)},
        )
        return False
    logger.info("order event published", extra=fields)
    return True


# ---- Use cases ----
class CreateOrder:
    """Create an order, persist it and announce it with ``order.created``."""

    def __init__(self, repository: OrderRepository, publisher: EventPublisher):
        self.repository = repository
        self.publisher = publisher

    def execute(self, command: CreateOrderCommand, ctx: CallContext | None = None) -> CreateOrderResult:
        """Run the create flow.

        Args:
            command: Customer, contact, item lines and optional extras.
            ctx: Optional cancellation/deadline context.

        Returns:
            CreateOrderResult: The persisted pending order.

        Raises:
            ValidationError: Invalid command or aggregate; nothing persisted.
            PersistenceError: The repository failed; no event is built.
            OperationCancelled: The context expired before persisting.
        """
        ctx = _context(ctx)
        try:
            self._validate(command)
        except ValidationError as exc:
            logger.warning(
                "invalid create order request",
                extra={"customer_id": str(command.customer_id), "error": exc.message},
            )
            raise

        order = Order.new(command.customer_id, command.email, currency=_currency(command.currency))
        if command.metadata:
            order.apply_metadata(command.metadata)
        for line in command.items:
            order.add_item(line.product_id, line.name, line.price, line.quantity)
        if command.shipping_address is not None:
            order.set_shipping_address(command.shipping_address.to_address())
        if command.billing_address is not None:
            order.set_billing_address(command.billing_address.to_address())

        order.validate()

        ctx.check()
        try:
            self.repository.create(order, ctx=ctx)
        except OrderError as exc:
            logger.error(
                "failed to create order",
                extra={"order_id": str(order.id), "error": exc.message, "error_kind": exc.kind},
            )
            raise
        logger.info(
            "order created",
            extra={
                "order_id": str(order.id),
                "customer_id": str(order.customer_id),
                "total_amount": str(order.total_amount),
                "items_count": len(order.items),
            },
        )

        _publish(self.publisher, order.to_event(EventType.CREATED), ctx)
        return CreateOrderResult(order=order)

    @staticmethod
    def _validate(command: CreateOrderCommand) -> None:
        _require_id(command.customer_id, "customer_id")
        if not command.email:
            raise ValidationError("email is required")
        if not is_valid_email(command.email):
            raise ValidationError("invalid email format")
        if not command.items:
            raise ValidationError("at least one item is required")
        for index, line in enumerate(command.items):
            if line.product_id is None or line.product_id == NIL_ID or line.product_id == "":
                raise ValidationError(f"item {index}: product_id is required")
            if not line.name or not line.name.strip():
                raise ValidationError(f"item {index}: name is required")
            if to_money(line.price) <= 0:
                raise ValidationError(f"item {index}: price must be greater than 0")
            if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
                raise ValidationError(f"item {index}: quantity must be greater than 0")
        _currency(command.currency)
        if command.metadata:
            check_metadata(command.metadata)


class UpdateOrderStatus:
    """Move an order through the state machine and announce the change."""

    def __init__(self, repository: OrderRepository, publisher: EventPublisher):
        self.repository = repository
        self.publisher = publisher

    def execute(self, order_id: uuid.UUID, new_status, reason: str | None = None,
                ctx: CallContext | None = None) -> UpdateStatusResult:
        """Transition ``order_id`` to ``new_status``.

        Raises:
            ValidationError: Missing id or unknown status.
            OrderNotFound: No such order; no event is emitted.
            InvalidStatusTransition: Not allowed from the current status.
            ConcurrentModification: The order changed since it was read.
            PersistenceError: The repository failed.
        """
        ctx = _context(ctx)
        _require_id(order_id, "order_id")
        target = _parse_status(new_status)

        ctx.check()
        order = self.repository.get_by_id(order_id, ctx=ctx)
        old_status = order.status
        try:
            order.transition(target)
        except InvalidStatusTransition:
            logger.warning(
                "rejected order status transition",
                extra={"order_id": str(order_id), "old_status": old_status.value, "new_status": target.value},
            )
            raise
        if reason:
            order.metadata[STATUS_CHANGE_REASON_KEY] = reason

        ctx.check()
        self.repository.update(order, ctx=ctx)
        logger.info(
            "order status updated",
            extra={
                "order_id": str(order.id),
                "old_status": old_status.value,
                "new_status": order.status.value,
                "reason": reason or "",
            },
        )

        event = order.to_event(
            EventType.for_status(target),
            old_status=old_status.value,
            change_reason=reason or "",
        )
        _publish(self.publisher, event, ctx)
        return UpdateStatusResult(
            order=order,
            old_status=old_status,
            new_status=target,
            message=f"Order status updated from {old_status.value} to {target.value}",
        )


class DeleteOrder:
    """Logically delete an order by cancelling it.

    The state machine decides whether cancellation is allowed; the
    repository's guarded delete protects against a concurrent move into a
    terminal status between the read and the write.
    """

    def __init__(self, repository: OrderRepository, publisher: EventPublisher):
        self.repository = repository
        self.publisher = publisher

    def execute(self, order_id: uuid.UUID, reason: str | None = None,
                ctx: CallContext | None = None) -> UpdateStatusResult:
        ctx = _context(ctx)
        _require_id(order_id, "order_id")

        ctx.check()
        order = self.repository.get_by_id(order_id, ctx=ctx)
        old_status = order.status
        order.transition(OrderStatus.CANCELLED)

        ctx.check()
        self.repository.delete(order_id, ctx=ctx)
        order = self.repository.get_by_id(order_id, ctx=ctx)
        logger.info(
            "order deleted",
            extra={"order_id": str(order_id), "old_status": old_status.value},
        )

        event = order.to_event(
            EventType.CANCELLED,
            old_status=old_status.value,
            change_reason=reason or "deleted",
        )
        _publish(self.publisher, event, ctx)
        return UpdateStatusResult(
            order=order,
            old_status=old_status,
            new_status=OrderStatus.CANCELLED,
            message=f"Order {order_id} deleted",
        )


class GetOrder:
    def __init__(self, repository: OrderRepository):
        self.repository = repository

    def execute(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> Order:
        ctx = _context(ctx)
        _require_id(order_id, "order_id")
        ctx.check()
        return self.repository.get_by_id(order_id, ctx=ctx)


class ListOrders:
    """List orders with filters, returning the page and the total count."""

    def __init__(self, repository: OrderRepository):
        self.repository = repository

    def execute(self, filters: OrderFilters | None = None, ctx: CallContext | None = None) -> ListOrdersResult:
        ctx = _context(ctx)
        filters = normalize_filters(filters or OrderFilters())

        ctx.check()
        orders = self.repository.list(filters, ctx=ctx)
        total = self.repository.count(filters, ctx=ctx)
        logger.info(
            "orders listed",
            extra={"count": len(orders), "total_count": total, "limit": filters.limit, "offset": filters.offset},
        )
        return ListOrdersResult(orders=orders, total_count=total, limit=filters.limit, offset=filters.offset)


def normalize_filters(filters: OrderFilters) -> OrderFilters:
    """Apply list defaults and bounds, then validate.

    The caller's object is not modified. Naive date bounds are read as
    UTC.

    Raises:
        ValidationError: Unknown sort field/order, negative or inverted
            amount bounds, unknown status.
    """
    limit = filters.limit if filters.limit and filters.limit > 0 else DEFAULT_LIMIT
    limit = min(limit, MAX_LIMIT)
    offset = max(filters.offset or 0, 0)
    sort_by = filters.sort_by or "created_at"
    sort_order = (filters.sort_order or "desc").lower()

    if sort_by not in SORT_FIELDS:
        raise ValidationError(f"invalid sort_by field: {sort_by}")
    if sort_order not in SORT_ORDERS:
        raise ValidationError("sort_order must be 'asc' or 'desc'")

    min_amount = to_money(filters.min_amount) if filters.min_amount is not None else None
    max_amount = to_money(filters.max_amount) if filters.max_amount is not None else None
    if min_amount is not None and min_amount < 0:
        raise ValidationError("min_amount cannot be negative")
    if max_amount is not None and max_amount < 0:
        raise ValidationError("max_amount cannot be negative")
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise ValidationError("min_amount cannot be greater than max_amount")

    status = filters.status
    if status is not None and not isinstance(status, OrderStatus):
        try:
            status = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"invalid status: {status}") from None

    return replace(
        filters,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
        min_amount=min_amount,
        max_amount=max_amount,
        status=status,
        currency=filters.currency.upper() if filters.currency else None,
        email=filters.email or None,
        date_from=_aware(filters.date_from),
        date_to=_aware(filters.date_to),
    )


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    """Read naive bounds as UTC."""
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _currency(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    if len(value) != 3 or not value.isalpha():
        raise ValidationError("currency must be a 3-letter code")
    return value.upper()
