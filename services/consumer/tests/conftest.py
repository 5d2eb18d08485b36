import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

# Point the service at in-memory SQLite before ``main`` builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from handlers import EventConsumer  # noqa: E402
from repo import ConsumerStore, Order, OrderItem, make_engine  # noqa: E402


class RecordingSideEffects:
    """Collects every side-effect call as ``(name, args)``."""

    def __init__(self):
        self.calls = []

    def send(self, template, recipient, order_id, data, key):
        self.calls.append(("send", template, recipient, order_id, data, key))

    def reserve(self, order_id, item_count, key):
        self.calls.append(("reserve", order_id, item_count, key))

    def release(self, order_id, key):
        self.calls.append(("release", order_id, key))

    def capture(self, order_id, amount, currency, key):
        self.calls.append(("capture", order_id, amount, currency, key))

    def refund(self, order_id, amount, currency, key):
        self.calls.append(("refund", order_id, amount, currency, key))

    def names(self):
        return [c[0] if c[0] != "send" else f"send:{c[1]}" for c in self.calls]


@pytest.fixture
def store():
    s = ConsumerStore(make_engine("sqlite://"))
    s.init_db(include_orders=True)
    return s


@pytest.fixture
def effects():
    return RecordingSideEffects()


@pytest.fixture
def consumer(store, effects):
    return EventConsumer(store, notifications=effects, warehouse=effects, payments=effects)


@pytest.fixture
def stored_order(store):
    """Insert one order (2 + 1 units, 26.98 USD) and return its id."""
    oid = uuid.uuid4()
    now = datetime.now(timezone.utc)
    with store.session() as s:
        s.add(Order(id=oid, customer_id=uuid.uuid4(), email="ana@example.com", status="cancelled",
                    total_amount=Decimal("26.98"), currency="USD", created_at=now, updated_at=now))
        s.flush()
        s.add_all([
            OrderItem(id=uuid.uuid4(), order_id=oid, product_id=uuid.uuid4(), name="Mug",
                      price=Decimal("10.99"), quantity=2, total=Decimal("21.98")),
            OrderItem(id=uuid.uuid4(), order_id=oid, product_id=uuid.uuid4(), name="Coaster",
                      price=Decimal("5.00"), quantity=1, total=Decimal("5.00")),
        ])
        s.commit()
    return oid


def make_event(event_type, order_id=None, **data):
    """Build a record body shaped like the order service's events."""
    body = {
        "event_type": event_type,
        "event_id": str(uuid.uuid4()),
        "order_id": str(order_id or uuid.uuid4()),
        "customer_id": str(uuid.uuid4()),
        "status": "pending",
        "total_amount": "26.98",
        "currency": "USD",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {"email": "ana@example.com", "item_count": 3, **data},
    }
    headers = {"event-type": event_type, "event-id": body["event_id"], "content-type": "application/json"}
    return body, headers


@pytest.fixture
def event_factory():
    return make_event
