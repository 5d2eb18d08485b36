import uuid

import pytest

from apps.orders.models import IdempotencyKey, OrderModel

CREATE_URL = "/api/orders/"


def _payload(quantity=2, customer_id="6f1c3e1a-0000-4000-8000-000000000001"):
    return {
        "customer_id": customer_id,
        "email": "ana@example.com",
        "items": [{"product_id": "6f1c3e1a-0000-4000-8000-0000000000aa", "name": "Mug",
                   "price": "10.99", "quantity": quantity}],
    }


@pytest.mark.django_db
def test_idempotent_same_payload_returns_same_order_on_retry(client, published):
    key = "idem-same-1"

    # 1st attempt
    r1 = client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r1.status_code == 201
    body1 = r1.json()

    # 2nd attempt (replay)
    r2 = client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r2.status_code == 201
    assert r2.json() == body1
    assert r2.headers.get("Idempotent-Replay") == "true"

    assert OrderModel.objects.count() == 1
    assert len(published) == 1
    assert str(IdempotencyKey.objects.get(key=key).order_id) == body1["order"]["id"]


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload_with_same_key(client):
    key = "idem-conflict-1"

    r1 = client.post(CREATE_URL, data=_payload(2), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r1.status_code == 201

    r2 = client.post(CREATE_URL, data=_payload(3), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r2.status_code == 409
    assert r2.json()["kind"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_replay_preserves_validation_error(client):
    key = "idem-400"
    payload = _payload()
    payload["email"] = "broken"

    r1 = client.post(CREATE_URL, data=payload, content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r1.status_code == 400

    r2 = client.post(CREATE_URL, data=payload, content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r2.status_code == 400
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_transient_failure_does_not_consume_key(client, monkeypatch):
    from apps.orders.errors import PersistenceError
    from apps.orders.repository import DjangoOrderRepository

    key = "idem-503"
    original = DjangoOrderRepository.create

    def broken(self, order, ctx=None):
        raise PersistenceError("database unavailable")

    monkeypatch.setattr(DjangoOrderRepository, "create", broken)
    r1 = client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r1.status_code == 503
    assert not IdempotencyKey.objects.filter(key=key).exists()

    monkeypatch.setattr(DjangoOrderRepository, "create", original)
    r2 = client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r2.status_code == 201
    assert r2.headers.get("Idempotent-Replay") is None
    uuid.UUID(r2.json()["order"]["id"])


@pytest.mark.django_db
def test_unexpected_failure_releases_key(client, monkeypatch):
    from apps.orders.usecases import CreateOrder

    key = "idem-crash"
    original = CreateOrder.execute

    def crash(self, cmd, ctx=None):
        raise RuntimeError("worker died")

    monkeypatch.setattr(CreateOrder, "execute", crash)
    with pytest.raises(RuntimeError):
        client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert not IdempotencyKey.objects.filter(key=key).exists()

    monkeypatch.setattr(CreateOrder, "execute", original)
    r = client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r.status_code == 201
    assert r.headers.get("Idempotent-Replay") is None
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_key_still_in_flight_is_409_not_a_replay(client, published):
    from apps.orders.idempotency import _hash

    key = "idem-in-flight"
    IdempotencyKey.objects.create(key=key, request_hash=_hash(_payload()), response_status=0, response_body={})

    r = client.post(CREATE_URL, data=_payload(), content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})
    assert r.status_code == 409
    assert r.json()["kind"] == "IDEMPOTENCY_CONFLICT"
    assert r.json()["retryable"] is True
    assert r.headers.get("Idempotent-Replay") is None
    assert IdempotencyKey.objects.filter(key=key).exists()
    assert OrderModel.objects.count() == 0
    assert published == []
