"""Service provider helpers for wiring the order use cases with ports.

``get_order_usecases`` returns an ``OrderUseCases`` bundle built from the
configured repository and publisher. ``settings.ORDER_EVENTS_BACKEND``
selects the adapters:

- ``"http"`` (default): Django ORM repository and the HTTP event publisher.
- ``"memory"``: Django ORM repository and an in-process publisher that
  just records events; handy for tests and local development.
"""

from dataclasses import dataclass

from django.conf import settings

from .adapters import InMemoryEventPublisher
from .domain import EventPublisher, OrderRepository
from .http_adapters import HttpEventPublisher
from .repository import DjangoOrderRepository
from .usecases import CreateOrder, DeleteOrder, GetOrder, ListOrders, UpdateOrderStatus

# Shared in-memory publisher so tests can inspect what the views emitted
_memory_publisher = InMemoryEventPublisher()


@dataclass
class OrderUseCases:
    create: CreateOrder
    update_status: UpdateOrderStatus
    delete: DeleteOrder
    get: GetOrder
    list: ListOrders


def get_order_repository() -> OrderRepository:
    return DjangoOrderRepository()


def get_event_publisher() -> EventPublisher:
    """Return the publisher selected by ``ORDER_EVENTS_BACKEND``."""
    if getattr(settings, "ORDER_EVENTS_BACKEND", "http") == "memory":
        return _memory_publisher
    return HttpEventPublisher()


def memory_publisher() -> InMemoryEventPublisher:
    return _memory_publisher


def get_order_usecases() -> OrderUseCases:
    """Return the use cases wired with the configured ports.

    Returns:
        OrderUseCases: One instance of each use case sharing a repository
        and a publisher.
    """
    repository = get_order_repository()
    publisher = get_event_publisher()
    return OrderUseCases(
        create=CreateOrder(repository, publisher),
        update_status=UpdateOrderStatus(repository, publisher),
        delete=DeleteOrder(repository, publisher),
        get=GetOrder(repository),
        list=ListOrders(repository),
    )
