"""API tests for the orders endpoints.

Events go to the in-process publisher (see ``conftest.py``), so the tests
can assert on what each endpoint announced.
"""
import uuid

import pytest

from apps.orders import providers
from apps.orders.errors import PersistenceError

ORDERS_URL = "/api/orders/"


def _payload(**kw):
    payload = {
        "customer_id": str(uuid.uuid4()),
        "email": "ana@example.com",
        "currency": "usd",
        "items": [
            {"product_id": str(uuid.uuid4()), "name": "Mug", "price": "10.99", "quantity": 2},
            {"product_id": str(uuid.uuid4()), "name": "Coaster", "price": 5, "quantity": 1},
        ],
        "shipping_address": {"street": "1 Main St", "city": "Lisbon", "country": "PT", "zip_code": "1000"},
    }
    payload.update(kw)
    return payload


def _create(client, **kw):
    r = client.post(ORDERS_URL, data=_payload(**kw), content_type="application/json")
    assert r.status_code == 201, r.content
    return r.json()["order"]


@pytest.mark.django_db
def test_create_returns_201_with_exact_amounts(client, published):
    r = client.post(ORDERS_URL, data=_payload(), content_type="application/json")
    assert r.status_code == 201
    body = r.json()
    assert body["message"] == "Order created successfully"
    order = body["order"]
    assert order["status"] == "pending"
    assert order["currency"] == "USD"
    assert order["total_amount"] == "26.98"
    assert [i["total"] for i in order["items"]] == ["21.98", "5.00"]
    assert order["shipping_address"]["type"] == "shipping"
    assert r.headers.get("X-Request-ID")

    assert [e.event_type.value for e in published] == ["order.created"]
    assert str(published[0].order_id) == order["id"]


@pytest.mark.django_db
def test_get_order_round_trip(client):
    created = _create(client)
    r = client.get(f"{ORDERS_URL}{created['id']}/")
    assert r.status_code == 200
    assert r.json()["order"]["id"] == created["id"]
    assert r.json()["order"]["total_amount"] == "26.98"


@pytest.mark.django_db
def test_get_unknown_order_is_404(client):
    r = client.get(f"{ORDERS_URL}{uuid.uuid4()}/")
    assert r.status_code == 404
    assert r.json()["kind"] == "ORDER_NOT_FOUND"
    assert r.json()["retryable"] is False


@pytest.mark.django_db
@pytest.mark.parametrize(
    "overrides",
    [
        {"email": "nope"},
        {"items": []},
        {"customer_id": "not-a-uuid"},
        {"currency": "EURO"},
        {"items": [{"product_id": str(uuid.uuid4()), "name": "Mug", "price": "-1", "quantity": 1}]},
    ],
)
def test_create_validation_errors_are_400(client, published, overrides):
    r = client.post(ORDERS_URL, data=_payload(**overrides), content_type="application/json")
    assert r.status_code == 400
    assert r.json()["kind"] == "VALIDATION_ERROR"
    assert published == []


@pytest.mark.django_db
def test_malformed_json_is_400(client):
    r = client.post(ORDERS_URL, data="{not json", content_type="application/json")
    assert r.status_code == 400
    assert r.json()["kind"] == "VALIDATION_ERROR"


@pytest.mark.django_db
def test_create_survives_publisher_outage(client):
    providers.memory_publisher().fail_with = ConnectionError("broker down")
    created = _create(client)
    r = client.get(f"{ORDERS_URL}{created['id']}/")
    assert r.status_code == 200


@pytest.mark.django_db
def test_persistence_failure_is_503(client, monkeypatch):
    from apps.orders.repository import DjangoOrderRepository

    def broken(self, order, ctx=None):
        raise PersistenceError("database unavailable")

    monkeypatch.setattr(DjangoOrderRepository, "create", broken)
    r = client.post(ORDERS_URL, data=_payload(), content_type="application/json")
    assert r.status_code == 503
    assert r.json() == {"kind": "PERSISTENCE_ERROR", "detail": "database unavailable", "retryable": True}


@pytest.mark.django_db
def test_status_update_flow(client, published):
    created = _create(client)
    url = f"{ORDERS_URL}{created['id']}/status/"

    r = client.put(url, data={"new_status": "confirmed", "reason": "paid"}, content_type="application/json")
    assert r.status_code == 200
    body = r.json()
    assert (body["old_status"], body["new_status"]) == ("pending", "confirmed")
    assert body["order"]["metadata"]["status_change_reason"] == "paid"
    assert published[-1].event_type.value == "order.confirmed"
    assert published[-1].data["change_reason"] == "paid"

    r = client.put(url, data={"new_status": "delivered"}, content_type="application/json")
    assert r.status_code == 409
    assert r.json()["kind"] == "INVALID_STATUS_TRANSITION"

    r = client.put(url, data={"new_status": "lost"}, content_type="application/json")
    assert r.status_code == 400

    r = client.put(f"{ORDERS_URL}{uuid.uuid4()}/status/", data={"new_status": "confirmed"},
                   content_type="application/json")
    assert r.status_code == 404


@pytest.mark.django_db
def test_delete_cancels_order(client, published):
    created = _create(client)
    r = client.delete(f"{ORDERS_URL}{created['id']}/?reason=customer+request")
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "cancelled"
    assert published[-1].event_type.value == "order.cancelled"
    assert published[-1].data["change_reason"] == "customer request"

    again = client.delete(f"{ORDERS_URL}{created['id']}/")
    assert again.status_code == 409


@pytest.mark.django_db
def test_list_with_filters(client):
    customer = str(uuid.uuid4())
    for _ in range(3):
        _create(client, customer_id=customer)
    _create(client)

    r = client.get(ORDERS_URL, {"customer_id": customer, "limit": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["total_count"] == 3
    assert len(body["orders"]) == 2
    assert (body["limit"], body["offset"]) == (2, 0)

    r = client.get(ORDERS_URL, {"min_amount": "30", "max_amount": "10"})
    assert r.status_code == 400
    assert "min_amount" in r.json()["detail"]

    r = client.get(ORDERS_URL, {"sort_by": "email"})
    assert r.status_code == 400

    r = client.get(ORDERS_URL, {"status": "bogus"})
    assert r.status_code == 400


@pytest.mark.django_db
def test_request_id_is_propagated(client):
    r = client.get(f"{ORDERS_URL}{uuid.uuid4()}/", HTTP_X_REQUEST_ID="req-123")
    assert r.headers["X-Request-ID"] == "req-123"


@pytest.mark.django_db
def test_health_reports_db_and_circuit(client):
    r = client.get("/health/")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["components"]["events"]["circuit"] == "CLOSED"
