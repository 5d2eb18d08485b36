"""HTTP event publisher with retries, a circuit breaker, and context headers.

This module implements the ``EventPublisher`` port over an HTTP record
endpoint using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the call context or
    the ContextVar set by the gateway middleware.
- A circuit breaker in front of the events endpoint to avoid hammering an
    unhealthy broker, with HALF_OPEN probing after a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Deadline awareness: each attempt's timeout is capped by what is left of
    the caller's ``CallContext``.

Every failure, including an open circuit, surfaces as ``PublishError`` so
use cases only have one exception to log.
"""

import logging
import threading
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import CallContext, EventPublisher, OrderEvent
from .errors import OperationCancelled, PublishError

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("orders.events")

# ---------------- Circuit Breaker ---------------- #


class CircuitOpen(RuntimeError):
    """Raised by ``CircuitBreaker.before_call`` when calls are not allowed."""


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpen: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpen("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise CircuitOpen("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False

    def reset(self):
        """Force the breaker back to CLOSED (used by tests and admin hooks)."""
        self.on_success()


_publisher_cb = CircuitBreaker(
    "order-events",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


def publisher_circuit() -> CircuitBreaker:
    """Return the process-wide breaker guarding the events endpoint."""
    return _publisher_cb


# ---------------- Helpers ---------------- #

def _request_headers(ctx: CallContext | None, extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    The call context's request id wins; otherwise the one bound by the
    middleware for the current request is used.
    """
    headers: dict[str, str] = {}
    rid = ctx.request_id if ctx is not None else "-"
    if not rid or rid == "-":
        rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base, max_sleep)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


# ---------------- Event Publisher ---------------- #

class HttpEventPublisher(EventPublisher):
    """Publish order events as keyed records to an HTTP topic endpoint.

    Records are POSTed to ``{base_url}/topics/{topic}/records`` as
    ``{"key", "value", "headers"}``. The key is the order id, so a broker
    partitioning by key keeps each order's events in order.
    """

    def __init__(self, base_url: str | None = None, topic: str | None = None,
                 timeout: float | None = None, breaker: CircuitBreaker | None = None):
        self.base_url = (base_url or settings.ORDER_EVENTS_BASE_URL).rstrip("/")
        self.topic = topic or getattr(settings, "ORDER_EVENTS_TOPIC", "orders")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or _publisher_cb

    @property
    def url(self) -> str:
        return f"{self.base_url}/topics/{self.topic}/records"

    def publish(self, event: OrderEvent, ctx: CallContext | None = None) -> None:
        """Deliver ``event`` or raise ``PublishError``.

        Applies a circuit-breaker precheck and retries transport errors and
        5xx responses with exponential backoff. Any other non-2xx response
        is a definitive failure.

        Raises:
            PublishError: The circuit is open, retries were exhausted, the
                endpoint rejected the record, or the deadline passed.
        """
        record = {"key": event.key, "value": event.to_dict(), "headers": event.headers()}
        max_retries, backoff, cap = _retry_policy()
        tries = 0

        try:
            state = self.breaker.before_call()
        except CircuitOpen as exc:
            raise PublishError(f"event publisher circuit open ({exc})") from exc
        headers = _request_headers(ctx, {"X-Circuit-State": state, "X-Retry-Count": "0"})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    if ctx is not None:
                        try:
                            ctx.check()
                        except OperationCancelled as exc:
                            # Only failed attempts count against the broker
                            if tries:
                                self.breaker.on_failure()
                            raise PublishError(f"publish aborted: {exc.message}") from exc
                    resp = None
                    exc = None
                    try:
                        resp = client.post(self.url, json=record, headers=headers,
                                           timeout=self._attempt_timeout(ctx))
                        if 200 <= resp.status_code < 300:
                            self.breaker.on_success()
                            return
                        if not _should_retry(resp, None):
                            # Rejected record: the broker is healthy
                            self.breaker.on_success()
                            raise PublishError(
                                f"events endpoint rejected {event.event_type.value} with HTTP {resp.status_code}"
                            )
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)
                    logger.warning(
                        "order event publish attempt failed",
                        extra={
                            "order_id": event.key,
                            "event_type": event.event_type.value,
                            "attempt": tries,
                            "status": resp.status_code if resp is not None else None,
                            "error": str(exc) if exc else None,
                        },
                    )

                    if tries >= max_retries:
                        self.breaker.on_failure()
                        if exc is not None:
                            raise PublishError(f"events endpoint unreachable: {exc}") from exc
                        raise PublishError(f"events endpoint failed with HTTP {resp.status_code}")

                    time.sleep(min(backoff * (2 ** (tries - 1)), cap))
        finally:
            self.breaker.on_finish()

    def _attempt_timeout(self, ctx: CallContext | None) -> float:
        remaining = ctx.remaining() if ctx is not None else None
        if remaining is None:
            return self.timeout
        return max(0.001, min(self.timeout, remaining))
