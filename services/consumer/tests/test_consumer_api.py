"""HTTP tests for the consumer service (FastAPI ``TestClient``)."""
import json

import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture
def client(consumer):
    main.app.dependency_overrides[main.get_consumer] = lambda: consumer
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_deliver_acknowledges_processed_event(client, effects, event_factory):
    body, headers = event_factory("order.created")
    r = client.post("/deliver", content=json.dumps(body), headers={**headers, "X-Request-ID": "req-1"})
    assert r.status_code == 200
    assert r.json()["outcome"] == "processed"
    assert r.headers["X-Request-ID"] == "req-1"
    assert effects.names() == ["send:order_created", "reserve"]


def test_deliver_failure_asks_for_redelivery(client, event_factory):
    body, headers = event_factory("order.cancelled")  # no stored order to read back
    r = client.post("/deliver", content=json.dumps(body), headers=headers)
    assert r.status_code == 503
    assert r.json()["outcome"] == "failed"


def test_deliver_rejects_garbage_with_ack(client):
    r = client.post("/deliver", content=b"\x00\x01", headers={"event-type": "order.created"})
    assert r.status_code == 200
    assert r.json()["outcome"] == "rejected"
