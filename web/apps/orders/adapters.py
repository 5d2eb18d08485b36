"""In-process adapters for the orders domain ports.

These adapters implement ``OrderRepository`` and ``EventPublisher`` without
a database or a broker. They are intended for unit tests and local
development where deterministic behavior is useful and external services
are not required. Both are thread-safe and follow the same contracts as the
production adapters (version checks, guarded delete, ``PublishError``).
"""

import copy
import threading
import uuid
from typing import Callable, List, Optional

from .domain import CallContext, Order, OrderEvent, OrderFilters, OrderRepository, OrderStatus, EventPublisher
from .errors import ConcurrentModification, OrderNotFound, PublishError

_UNDELETABLE = frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.CANCELLED})


class InMemoryOrderRepository(OrderRepository):
    """Dictionary-backed ``OrderRepository``.

    Orders are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._orders: dict[uuid.UUID, Order] = {}

    def create(self, order: Order, ctx: CallContext | None = None) -> None:
        _check(ctx)
        with self._lock:
            self._orders[order.id] = copy.deepcopy(order)

    def get_by_id(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> Order:
        _check(ctx)
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return copy.deepcopy(order)

    def update(self, order: Order, ctx: CallContext | None = None) -> None:
        _check(ctx)
        with self._lock:
            stored = self._orders.get(order.id)
            if stored is None:
                raise OrderNotFound(order.id)
            if stored.version != order.version:
                raise ConcurrentModification(order.id, order.version)
            order.version += 1
            # Header-only write: items and addresses keep their stored value
            updated = copy.deepcopy(order)
            updated.items = stored.items
            updated.shipping_address = stored.shipping_address
            updated.billing_address = stored.billing_address
            self._orders[order.id] = updated

    def update_status(self, order_id: uuid.UUID, status: OrderStatus,
                      ctx: CallContext | None = None) -> None:
        _check(ctx)
        with self._lock:
            stored = self._orders.get(order_id)
            if stored is None:
                raise OrderNotFound(order_id)
            stored.status = OrderStatus(status)
            stored._touch()
            stored.version += 1

    def delete(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> None:
        _check(ctx)
        with self._lock:
            stored = self._orders.get(order_id)
            if stored is None or stored.status in _UNDELETABLE:
                raise OrderNotFound(order_id)
            stored.status = OrderStatus.CANCELLED
            stored._touch()
            stored.version += 1

    def list(self, filters: OrderFilters, ctx: CallContext | None = None) -> List[Order]:
        _check(ctx)
        with self._lock:
            matches = [o for o in self._orders.values() if _matches(o, filters)]
        reverse = filters.sort_order == "desc"
        matches.sort(key=lambda o: (_sort_value(o, filters.sort_by), str(o.id)), reverse=reverse)
        page = matches[filters.offset:filters.offset + filters.limit]
        return [copy.deepcopy(o) for o in page]

    def count(self, filters: OrderFilters, ctx: CallContext | None = None) -> int:
        _check(ctx)
        with self._lock:
            return sum(1 for o in self._orders.values() if _matches(o, filters))

    def exists(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> bool:
        _check(ctx)
        with self._lock:
            return order_id in self._orders


class InMemoryEventPublisher(EventPublisher):
    """Record published events in a list.

    ``fail_with`` can be set to an exception (or a callable returning one)
    to simulate an unavailable transport; the event is then not recorded
    and ``PublishError`` is raised.
    """

    def __init__(self, fail_with: Optional[Exception | Callable[[OrderEvent], Exception]] = None):
        self._lock = threading.Lock()
        self.events: List[OrderEvent] = []
        self.fail_with = fail_with

    def publish(self, event: OrderEvent, ctx: CallContext | None = None) -> None:
        _check(ctx)
        if self.fail_with is not None:
            exc = self.fail_with(event) if callable(self.fail_with) else self.fail_with
            if isinstance(exc, PublishError):
                raise exc
            raise PublishError(f"failed to publish {event.event_type.value}: {exc}") from exc
        with self._lock:
            self.events.append(event)

    def messages(self) -> List[dict]:
        """Return recorded events in transport shape (key, value, headers)."""
        with self._lock:
            return [{"key": e.key, "value": e.to_dict(), "headers": e.headers()} for e in self.events]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


def _check(ctx: CallContext | None) -> None:
    if ctx is not None:
        ctx.check()


def _matches(order: Order, f: OrderFilters) -> bool:
    if f.customer_id is not None and order.customer_id != f.customer_id:
        return False
    if f.status is not None and order.status != OrderStatus(f.status):
        return False
    if f.email and f.email.lower() not in order.email.lower():
        return False
    if f.currency and order.currency != f.currency.upper():
        return False
    if f.min_amount is not None and order.total_amount < f.min_amount:
        return False
    if f.max_amount is not None and order.total_amount > f.max_amount:
        return False
    if f.date_from is not None and order.created_at < f.date_from:
        return False
    if f.date_to is not None and order.created_at > f.date_to:
        return False
    return True


def _sort_value(order: Order, field_name: str):
    value = getattr(order, field_name)
    return value.value if isinstance(value, OrderStatus) else value
