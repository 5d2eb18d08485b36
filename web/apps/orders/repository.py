"""Repository layer for persisting orders.

``DjangoOrderRepository`` implements the ``OrderRepository`` port on top
of the Django ORM. It maps between the domain ``Order`` aggregate and the
``orders`` / ``order_items`` / ``order_addresses`` tables so the domain
layer is not coupled to ORM types.

Writes to one order are serialized with an optimistic ``version`` column:
``update`` only succeeds when the stored version still matches the one the
aggregate was read with.
"""

import uuid
from typing import List

from django.db import DatabaseError, transaction
from django.db.models import F, Q, QuerySet
from django.utils import timezone

from .domain import (
    Address,
    AddressType,
    CallContext,
    Order,
    OrderFilters,
    OrderItem,
    OrderStatus,
)
from .errors import ConcurrentModification, OrderNotFound, PersistenceError
from .models import OrderAddressModel, OrderItemModel, OrderModel

# Statuses a logical delete must not touch
UNDELETABLE = (
    OrderStatus.DELIVERED.value,
    OrderStatus.REFUNDED.value,
    OrderStatus.CANCELLED.value,
)


class DjangoOrderRepository:
    """Persist ``Order`` aggregates with the Django ORM.

    Every public method accepts an optional ``CallContext`` and refuses to
    start once it is cancelled or past its deadline. Database failures are
    wrapped in ``PersistenceError``.
    """

    def create(self, order: Order, ctx: CallContext | None = None) -> None:
        """Insert header, items and addresses in one transaction.

        Args:
            order: Aggregate to persist; its ``id`` becomes the primary key.
            ctx: Optional call context.

        Raises:
            PersistenceError: On constraint violations or connectivity
                errors. Nothing is written in that case.
        """
        _check(ctx)
        try:
            with transaction.atomic():
                obj = OrderModel.objects.create(
                    id=order.id,
                    customer_id=order.customer_id,
                    email=order.email,
                    status=order.status.value,
                    total_amount=order.total_amount,
                    currency=order.currency,
                    metadata=order.metadata,
                    version=order.version,
                    created_at=order.created_at,
                    updated_at=order.updated_at,
                )
                OrderItemModel.objects.bulk_create([
                    OrderItemModel(
                        id=item.id,
                        order=obj,
                        product_id=item.product_id,
                        name=item.name,
                        price=item.price,
                        quantity=item.quantity,
                        total=item.total,
                        position=position,
                    )
                    for position, item in enumerate(order.items)
                ])
                addresses = [a for a in (order.shipping_address, order.billing_address) if a is not None]
                OrderAddressModel.objects.bulk_create([
                    OrderAddressModel(
                        id=address.id or uuid.uuid4(),
                        order=obj,
                        type=address.type.value,
                        street=address.street,
                        city=address.city,
                        state=address.state or "",
                        country=address.country,
                        zip_code=address.zip_code,
                    )
                    for address in addresses
                ])
        except DatabaseError as exc:
            raise PersistenceError(f"failed to create order {order.id}: {exc}") from exc

    def get_by_id(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> Order:
        """Load the full aggregate.

        Raises:
            OrderNotFound: No order with ``order_id``.
            PersistenceError: On database errors.
        """
        _check(ctx)
        try:
            obj = (
                OrderModel.objects.prefetch_related("items", "addresses")
                .filter(id=order_id)
                .first()
            )
        except DatabaseError as exc:
            raise PersistenceError(f"failed to get order {order_id}: {exc}") from exc
        if obj is None:
            raise OrderNotFound(order_id)
        return _to_domain(obj)

    def update(self, order: Order, ctx: CallContext | None = None) -> None:
        """Overwrite the header fields (and metadata) of an existing order.

        On success ``order.version`` is advanced to the stored version.

        Raises:
            OrderNotFound: No order with ``order.id``.
            ConcurrentModification: The stored version moved on since read.
            PersistenceError: On database errors.
        """
        _check(ctx)
        try:
            with transaction.atomic():
                rows = OrderModel.objects.filter(id=order.id, version=order.version).update(
                    customer_id=order.customer_id,
                    email=order.email,
                    status=order.status.value,
                    total_amount=order.total_amount,
                    currency=order.currency,
                    metadata=order.metadata,
                    updated_at=order.updated_at,
                    version=F("version") + 1,
                )
                if rows == 0:
                    if OrderModel.objects.filter(id=order.id).exists():
                        raise ConcurrentModification(order.id, order.version)
                    raise OrderNotFound(order.id)
        except DatabaseError as exc:
            raise PersistenceError(f"failed to update order {order.id}: {exc}") from exc
        order.version += 1

    def update_status(self, order_id: uuid.UUID, status: OrderStatus,
                      ctx: CallContext | None = None) -> None:
        """Narrow update of status and ``updated_at`` only."""
        _check(ctx)
        try:
            rows = OrderModel.objects.filter(id=order_id).update(
                status=OrderStatus(status).value,
                updated_at=timezone.now(),
                version=F("version") + 1,
            )
        except DatabaseError as exc:
            raise PersistenceError(f"failed to update status of order {order_id}: {exc}") from exc
        if rows == 0:
            raise OrderNotFound(order_id)

    def delete(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> None:
        """Logical delete: cancel unless delivered, refunded or cancelled.

        Raises:
            OrderNotFound: When the guarded update matched no row, either
                because the order is missing or already in one of those
                statuses.
        """
        _check(ctx)
        try:
            rows = (
                OrderModel.objects.filter(id=order_id)
                .exclude(status__in=UNDELETABLE)
                .update(
                    status=OrderStatus.CANCELLED.value,
                    updated_at=timezone.now(),
                    version=F("version") + 1,
                )
            )
        except DatabaseError as exc:
            raise PersistenceError(f"failed to delete order {order_id}: {exc}") from exc
        if rows == 0:
            raise OrderNotFound(order_id)

    def list(self, filters: OrderFilters, ctx: CallContext | None = None) -> List[Order]:
        """Return one page of orders matching ``filters``.

        Results are ordered by ``filters.sort_by`` then by id, so pages are
        stable when the sort key ties.
        """
        _check(ctx)
        prefix = "-" if filters.sort_order == "desc" else ""
        qs = (
            _filtered(filters)
            .prefetch_related("items", "addresses")
            .order_by(f"{prefix}{filters.sort_by}", f"{prefix}id")
        )
        try:
            return [_to_domain(obj) for obj in qs[filters.offset:filters.offset + filters.limit]]
        except DatabaseError as exc:
            raise PersistenceError(f"failed to list orders: {exc}") from exc

    def count(self, filters: OrderFilters, ctx: CallContext | None = None) -> int:
        _check(ctx)
        try:
            return _filtered(filters).count()
        except DatabaseError as exc:
            raise PersistenceError(f"failed to count orders: {exc}") from exc

    def exists(self, order_id: uuid.UUID, ctx: CallContext | None = None) -> bool:
        _check(ctx)
        try:
            return OrderModel.objects.filter(id=order_id).exists()
        except DatabaseError as exc:
            raise PersistenceError(f"failed to check order {order_id}: {exc}") from exc

    def list_by_customer(self, customer_id: uuid.UUID, limit: int = 20, offset: int = 0,
                         ctx: CallContext | None = None) -> List[Order]:
        return self.list(OrderFilters(customer_id=customer_id, limit=limit, offset=offset), ctx=ctx)

    def list_by_status(self, status: OrderStatus, limit: int = 20, offset: int = 0,
                       ctx: CallContext | None = None) -> List[Order]:
        return self.list(OrderFilters(status=status, limit=limit, offset=offset), ctx=ctx)


def _check(ctx: CallContext | None) -> None:
    if ctx is not None:
        ctx.check()


def _filtered(filters: OrderFilters) -> QuerySet:
    q = Q()
    if filters.customer_id is not None:
        q &= Q(customer_id=filters.customer_id)
    if filters.status is not None:
        q &= Q(status=OrderStatus(filters.status).value)
    if filters.email:
        q &= Q(email__icontains=filters.email)
    if filters.currency:
        q &= Q(currency=filters.currency.upper())
    if filters.min_amount is not None:
        q &= Q(total_amount__gte=filters.min_amount)
    if filters.max_amount is not None:
        q &= Q(total_amount__lte=filters.max_amount)
    if filters.date_from is not None:
        q &= Q(created_at__gte=filters.date_from)
    if filters.date_to is not None:
        q &= Q(created_at__lte=filters.date_to)
    return OrderModel.objects.filter(q)


def _to_domain(obj: OrderModel) -> Order:
    """Map an ``OrderModel`` (with prefetched children) to an ``Order``."""
    addresses = {
        a.type: Address(
            id=a.id,
            type=AddressType(a.type),
            street=a.street,
            city=a.city,
            state=a.state,
            country=a.country,
            zip_code=a.zip_code,
        )
        for a in obj.addresses.all()
    }
    return Order(
        id=obj.id,
        customer_id=obj.customer_id,
        email=obj.email,
        status=OrderStatus(obj.status),
        total_amount=obj.total_amount,
        currency=obj.currency,
        items=[
            OrderItem(
                id=i.id,
                product_id=i.product_id,
                name=i.name,
                price=i.price,
                quantity=i.quantity,
                total=i.total,
            )
            for i in obj.items.all()
        ],
        shipping_address=addresses.get(AddressType.SHIPPING.value),
        billing_address=addresses.get(AddressType.BILLING.value),
        metadata=dict(obj.metadata or {}),
        created_at=obj.created_at,
        updated_at=obj.updated_at,
        version=obj.version,
    )
