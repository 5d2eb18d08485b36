"""Unit tests for the HTTP event publisher and its circuit breaker.

These tests monkeypatch ``httpx.Client.post`` and assert on retries, the
record shape, error mapping and the breaker state.
"""
import threading
import uuid

import httpx
import pytest

from apps.orders.domain import CallContext, EventType, Order
from apps.orders.errors import PublishError
from apps.orders.http_adapters import CircuitBreaker, HttpEventPublisher


class DummyResp:
    """Minimal httpx-like response stub for publisher tests."""

    def __init__(self, status_code=200):
        self.status_code = status_code


def _event():
    order = Order.new(uuid.uuid4(), "ana@example.com")
    order.add_item(uuid.uuid4(), "Mug", "10.99", 2)
    return order.to_event(EventType.CREATED)


@pytest.fixture
def breaker():
    return CircuitBreaker("test", fail_threshold=2, reset_timeout=60.0)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda s: None)


def test_publish_posts_keyed_record(monkeypatch, breaker):
    calls = []

    def fake_post(self, url, json=None, headers=None, **kw):
        calls.append((url, json, headers))
        return DummyResp(200)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    event = _event()
    pub = HttpEventPublisher(base_url="http://bridge:8082/", topic="orders", breaker=breaker)
    pub.publish(event, ctx=CallContext(request_id="req-9"))

    (url, record, headers), = calls
    assert url == "http://bridge:8082/topics/orders/records"
    assert record["key"] == str(event.order_id)
    assert record["value"]["total_amount"] == "21.98"
    assert record["headers"]["event-type"] == "order.created"
    assert headers["X-Request-ID"] == "req-9"
    assert breaker.state == "CLOSED"


def test_publish_retries_5xx_then_succeeds(monkeypatch, settings, breaker):
    settings.HTTP_RETRY_MAX = 3
    responses = iter([DummyResp(503), DummyResp(502), DummyResp(201)])
    seen = []

    def fake_post(self, url, json=None, headers=None, **kw):
        seen.append(headers["X-Retry-Count"])
        return next(responses)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    HttpEventPublisher(base_url="http://bridge", breaker=breaker).publish(_event())
    assert seen == ["0", "1", "2"]


def test_publish_network_error_becomes_publish_error(monkeypatch, settings, breaker):
    settings.HTTP_RETRY_MAX = 2
    attempts = []

    def fake_post(self, url, json=None, headers=None, **kw):
        attempts.append(url)
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(PublishError) as exc:
        HttpEventPublisher(base_url="http://bridge", breaker=breaker).publish(_event())
    assert len(attempts) == 2
    assert isinstance(exc.value.__cause__, httpx.ConnectError)


def test_publish_rejected_record_is_not_retried(monkeypatch, breaker):
    attempts = []

    def fake_post(self, url, json=None, headers=None, **kw):
        attempts.append(url)
        return DummyResp(422)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(PublishError, match="HTTP 422"):
        HttpEventPublisher(base_url="http://bridge", breaker=breaker).publish(_event())
    assert len(attempts) == 1
    assert breaker.state == "CLOSED"


def test_circuit_opens_after_threshold_and_short_circuits(monkeypatch, settings, breaker):
    settings.HTTP_RETRY_MAX = 1
    attempts = []

    def fake_post(self, url, json=None, headers=None, **kw):
        attempts.append(url)
        raise httpx.ConnectError("down")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    pub = HttpEventPublisher(base_url="http://bridge", breaker=breaker)
    for _ in range(2):
        with pytest.raises(PublishError):
            pub.publish(_event())
    assert breaker.state == "OPEN"

    with pytest.raises(PublishError, match="circuit open"):
        pub.publish(_event())
    assert len(attempts) == 2


def test_half_open_probe_closes_on_success(monkeypatch, breaker):
    breaker.reset_timeout = 0.0
    breaker.on_failure()
    breaker.on_failure()
    assert breaker.state == "HALF_OPEN"

    monkeypatch.setattr(httpx.Client, "post", lambda self, url, **kw: DummyResp(200), raising=True)
    HttpEventPublisher(base_url="http://bridge", breaker=breaker).publish(_event())
    assert breaker.state == "CLOSED"


def test_expired_context_is_a_publish_failure(monkeypatch, breaker):
    def fake_post(self, url, json=None, headers=None, **kw):
        raise AssertionError("must not be called")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(PublishError, match="aborted"):
        HttpEventPublisher(base_url="http://bridge", breaker=breaker).publish(_event(), ctx=CallContext(deadline=0.0))


def test_expired_context_does_not_open_circuit(monkeypatch, breaker):
    """Caller-side deadlines say nothing about the broker's health."""
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, **kw: DummyResp(200), raising=True)
    pub = HttpEventPublisher(base_url="http://bridge", breaker=breaker)
    for _ in range(breaker.fail_threshold + 1):
        with pytest.raises(PublishError, match="aborted"):
            pub.publish(_event(), ctx=CallContext(deadline=0.0))
    assert breaker.state == "CLOSED"

    pub.publish(_event())
    assert breaker.state == "CLOSED"


def test_cancel_after_failed_attempt_counts_once(monkeypatch, settings, breaker):
    settings.HTTP_RETRY_MAX = 5
    flag = threading.Event()
    ctx = CallContext(cancel_event=flag)
    attempts = []

    def fake_post(self, url, json=None, headers=None, **kw):
        attempts.append(url)
        flag.set()
        return DummyResp(503)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(PublishError, match="aborted"):
        HttpEventPublisher(base_url="http://bridge", breaker=breaker).publish(_event(), ctx=ctx)
    assert len(attempts) == 1
    assert breaker._failures == 1
    assert breaker.state == "CLOSED"
