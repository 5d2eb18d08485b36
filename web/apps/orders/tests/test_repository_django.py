"""Contract tests for ``DjangoOrderRepository`` against the test database."""
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import DatabaseError

from apps.orders.domain import Address, CallContext, Order, OrderFilters, OrderStatus
from apps.orders.errors import ConcurrentModification, OperationCancelled, OrderNotFound, PersistenceError
from apps.orders.models import OrderItemModel, OrderModel
from apps.orders.repository import DjangoOrderRepository


def _order(customer_id=None, email="ana@example.com", lines=(("10.99", 2), ("5.00", 1))) -> Order:
    order = Order.new(customer_id or uuid.uuid4(), email)
    for index, (price, qty) in enumerate(lines):
        order.add_item(uuid.uuid4(), f"item-{index}", price, qty)
    return order


@pytest.fixture
def repo():
    return DjangoOrderRepository()


@pytest.mark.django_db
def test_create_and_get_full_aggregate(repo):
    order = _order()
    order.set_shipping_address(Address(street="1 Main St", city="Lisbon", country="PT", zip_code="1000"))
    order.metadata["channel"] = "web"
    repo.create(order)

    got = repo.get_by_id(order.id)
    assert got.id == order.id
    assert got.total_amount == Decimal("26.98")
    assert [i.id for i in got.items] == [i.id for i in order.items]
    assert got.items[0].price == Decimal("10.99")
    assert got.shipping_address.zip_code == "1000"
    assert got.billing_address is None
    assert got.metadata == {"channel": "web"}
    assert got.version == 1
    assert repo.exists(order.id)


@pytest.mark.django_db
def test_get_unknown_raises_not_found(repo):
    with pytest.raises(OrderNotFound):
        repo.get_by_id(uuid.uuid4())
    assert not repo.exists(uuid.uuid4())


@pytest.mark.django_db
def test_create_is_atomic(repo, monkeypatch):
    """A failing item insert leaves no order header behind."""
    order = _order()

    def boom(*args, **kwargs):
        raise DatabaseError("insert failed")

    monkeypatch.setattr(OrderItemModel.objects, "bulk_create", boom)
    with pytest.raises(PersistenceError):
        repo.create(order)
    assert not OrderModel.objects.filter(id=order.id).exists()


@pytest.mark.django_db
def test_duplicate_create_is_persistence_error(repo):
    order = _order()
    repo.create(order)
    with pytest.raises(PersistenceError):
        repo.create(order)


@pytest.mark.django_db
def test_update_bumps_version_and_rejects_stale_writes(repo):
    order = _order()
    repo.create(order)
    first = repo.get_by_id(order.id)
    second = repo.get_by_id(order.id)

    first.transition(OrderStatus.CONFIRMED)
    first.metadata["status_change_reason"] = "paid"
    repo.update(first)
    assert first.version == 2

    second.transition(OrderStatus.CANCELLED)
    with pytest.raises(ConcurrentModification):
        repo.update(second)

    stored = repo.get_by_id(order.id)
    assert stored.status is OrderStatus.CONFIRMED
    assert stored.metadata["status_change_reason"] == "paid"
    assert stored.version == 2


@pytest.mark.django_db
def test_update_unknown_raises_not_found(repo):
    with pytest.raises(OrderNotFound):
        repo.update(_order())


@pytest.mark.django_db
def test_update_status_is_narrow(repo):
    order = _order()
    repo.create(order)
    repo.update_status(order.id, OrderStatus.CONFIRMED)
    got = repo.get_by_id(order.id)
    assert got.status is OrderStatus.CONFIRMED
    assert got.total_amount == order.total_amount
    with pytest.raises(OrderNotFound):
        repo.update_status(uuid.uuid4(), OrderStatus.CONFIRMED)


@pytest.mark.django_db
@pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.CANCELLED])
def test_delete_is_guarded(repo, status):
    order = _order()
    order.status = status
    repo.create(order)
    with pytest.raises(OrderNotFound):
        repo.delete(order.id)
    assert repo.get_by_id(order.id).status is status


@pytest.mark.django_db
def test_delete_cancels(repo):
    order = _order()
    repo.create(order)
    repo.delete(order.id)
    assert repo.get_by_id(order.id).status is OrderStatus.CANCELLED


@pytest.mark.django_db
def test_list_filters_sort_and_paginate(repo):
    customer = uuid.uuid4()
    base = Order.new(customer, "x@example.com").created_at
    amounts = ["5.00", "20.00", "12.50", "40.00"]
    ids = []
    for offset, amount in enumerate(amounts):
        order = _order(customer_id=customer, email=f"User{offset}@Example.com", lines=((amount, 1),))
        order.created_at = base + timedelta(minutes=offset)
        repo.create(order)
        ids.append(order.id)
    repo.create(_order())  # other customer

    mine = OrderFilters(customer_id=customer)
    assert repo.count(mine) == 4

    newest_first = repo.list(OrderFilters(customer_id=customer, limit=2))
    assert [o.id for o in newest_first] == [ids[3], ids[2]]
    page_two = repo.list(OrderFilters(customer_id=customer, limit=2, offset=2))
    assert [o.id for o in page_two] == [ids[1], ids[0]]

    by_amount = repo.list(OrderFilters(customer_id=customer, sort_by="total_amount", sort_order="asc"))
    assert [o.total_amount for o in by_amount] == [Decimal(a) for a in ["5.00", "12.50", "20.00", "40.00"]]

    ranged = OrderFilters(customer_id=customer, min_amount=Decimal("12.50"), max_amount=Decimal("20.00"))
    assert repo.count(ranged) == 2

    by_email = OrderFilters(email="user2@example")
    assert [o.id for o in repo.list(by_email)] == [ids[2]]

    since = OrderFilters(customer_id=customer, date_from=base + timedelta(minutes=2))
    assert repo.count(since) == 2

    assert [o.id for o in repo.list_by_customer(customer, limit=1)] == [ids[3]]
    assert len(repo.list_by_status(OrderStatus.PENDING, limit=10)) == 5


@pytest.mark.django_db
def test_repository_checks_context(repo):
    with pytest.raises(OperationCancelled):
        repo.create(_order(), ctx=CallContext(deadline=0.0))
    assert OrderModel.objects.count() == 0
