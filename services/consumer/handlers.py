"""Event consumption handler for order events.

``EventConsumer.deliver`` takes one pushed record (body plus transport
headers), resolves its event type, and dispatches it to the handler for
that type. Handlers perform side effects through the ports in
``side_effects`` and may read the order back from the database.

Delivery outcomes:

- ``processed``: the handler ran; the event id is recorded.
- ``duplicate``: the event id was already recorded; nothing runs again.
- ``skipped``: missing or unknown event type; the generic handler logs it.
- ``rejected``: the body cannot be parsed or its fields have the wrong
  shape; logged as a dead letter.
- ``failed``: the handler raised; the record is not acknowledged so the
  broker redelivers it.

All outcomes except ``failed`` acknowledge the record. Handlers run one at
a time per worker.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Mapping, Optional

from repo import ConsumerStore, StoreError
from side_effects import (
    LoggingNotificationSender,
    LoggingPaymentGateway,
    LoggingWarehouse,
    NotificationSender,
    PaymentGateway,
    Warehouse,
    idempotency_key,
)

logger = logging.getLogger("consumer.handlers")

TRACKING_PREFIX = "TRK-"


class Outcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def ack(self) -> bool:
        return self is not Outcome.FAILED


@dataclass(frozen=True)
class DeliveryResult:
    outcome: Outcome
    event_type: str = ""
    event_id: str = ""
    error: str = ""

    @property
    def ack(self) -> bool:
        return self.outcome.ack


class MalformedEvent(ValueError):
    """The record body is not a usable order event."""


@dataclass(frozen=True)
class ReceivedEvent:
    """An order event as seen by the consumer."""

    event_type: str
    event_id: str
    order_id: uuid.UUID
    customer_id: Optional[uuid.UUID]
    status: str
    total_amount: Decimal
    currency: str
    data: dict = field(default_factory=dict)

    @property
    def email(self) -> str:
        return self.data.get("email", "")

    @property
    def item_count(self) -> int:
        return int(self.data.get("item_count", 0))

    def key(self) -> str:
        return idempotency_key(self.event_type, self.order_id)


def tracking_number(order_id) -> str:
    return f"{TRACKING_PREFIX}{str(order_id)[:8]}"


def _count(value) -> int:
    """Coerce an item count, rejecting anything that is not a whole number."""
    if isinstance(value, bool):
        raise MalformedEvent(f"invalid item_count: {value!r}")
    try:
        count = Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedEvent(f"invalid item_count: {value!r}") from exc
    if not count.is_finite() or count != count.to_integral_value() or count < 0:
        raise MalformedEvent(f"invalid item_count: {value!r}")
    return int(count)


def parse_event(payload, headers: Mapping[str, str]) -> ReceivedEvent:
    """Decode a record body into a ``ReceivedEvent``.

    The ``event-type`` and ``event-id`` headers take precedence over the
    body's ``event_type`` and ``event_id``.

    Raises:
        MalformedEvent: Invalid JSON, not an object, missing/invalid ids, or
            an ``item_count`` or ``email`` of the wrong shape.
    """
    if isinstance(payload, (bytes, bytearray, str)):
        try:
            body = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedEvent(f"invalid JSON: {exc}") from exc
    else:
        body = payload
    if not isinstance(body, dict):
        raise MalformedEvent("event body must be a JSON object")

    try:
        order_id = uuid.UUID(str(body["order_id"]))
        customer_id = uuid.UUID(str(body["customer_id"])) if body.get("customer_id") else None
        total = Decimal(str(body.get("total_amount", "0")))
    except (KeyError, ValueError, InvalidOperation) as exc:
        raise MalformedEvent(f"invalid event fields: {exc}") from exc

    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise MalformedEvent("event data must be a JSON object")
    if not isinstance(data.get("email", ""), str):
        raise MalformedEvent("event email must be a string")
    if "item_count" in data:
        data = {**data, "item_count": _count(data["item_count"])}

    return ReceivedEvent(
        event_type=headers.get("event-type") or body.get("event_type") or "",
        event_id=headers.get("event-id") or str(body.get("event_id") or ""),
        order_id=order_id,
        customer_id=customer_id,
        status=body.get("status", ""),
        total_amount=total,
        currency=body.get("currency", ""),
        data=data,
    )


def _body_size(payload) -> int:
    if isinstance(payload, (bytes, bytearray, str)):
        return len(payload)
    return len(json.dumps(payload, default=str))


class EventConsumer:
    """Dispatch order events to per-type handlers.

    Args:
        store: Order read-back and processed-event bookkeeping.
        notifications: ``NotificationSender`` port.
        warehouse: ``Warehouse`` port.
        payments: ``PaymentGateway`` port.
    """

    def __init__(self, store: ConsumerStore,
                 notifications: NotificationSender | None = None,
                 warehouse: Warehouse | None = None,
                 payments: PaymentGateway | None = None):
        self.store = store
        self.notifications = notifications or LoggingNotificationSender()
        self.warehouse = warehouse or LoggingWarehouse()
        self.payments = payments or LoggingPaymentGateway()
        self._lock = threading.Lock()
        self._handlers: dict[str, Callable[[ReceivedEvent], None]] = {
            "order.created": self.handle_created,
            "order.confirmed": self.handle_confirmed,
            "order.cancelled": self.handle_cancelled,
            "order.shipped": self.handle_shipped,
            "order.delivered": self.handle_delivered,
            "order.refunded": self.handle_refunded,
        }

    def deliver(self, payload, headers: Mapping[str, str]) -> DeliveryResult:
        """Handle one pushed record and report what happened to it."""
        headers = {k.lower(): v for k, v in headers.items()}
        size = _body_size(payload)
        with self._lock:
            try:
                event = parse_event(payload, headers)
            except MalformedEvent as exc:
                logger.error(
                    "dead letter: unparseable order event",
                    extra={"error": str(exc), "headers": headers, "body_size": size},
                )
                return DeliveryResult(Outcome.REJECTED, event_type=headers.get("event-type", ""), error=str(exc))

            handler = self._handlers.get(event.event_type)
            if handler is None:
                self.handle_generic(event, headers, size)
                return DeliveryResult(Outcome.SKIPPED, event_type=event.event_type, event_id=event.event_id)

            try:
                seen = bool(event.event_id) and self.store.is_processed(event.event_id)
            except StoreError as exc:
                logger.error(
                    "processed-event lookup failed",
                    extra={"event_type": event.event_type, "event_id": event.event_id, "error": str(exc)},
                )
                return DeliveryResult(Outcome.FAILED, event_type=event.event_type,
                                      event_id=event.event_id, error=str(exc))
            if seen:
                logger.info(
                    "duplicate order event ignored",
                    extra={"event_type": event.event_type, "event_id": event.event_id,
                           "order_id": str(event.order_id)},
                )
                return DeliveryResult(Outcome.DUPLICATE, event_type=event.event_type, event_id=event.event_id)

            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    "order event handler failed",
                    extra={"event_type": event.event_type, "event_id": event.event_id,
                           "order_id": str(event.order_id), "error": str(exc)},
                )
                return DeliveryResult(Outcome.FAILED, event_type=event.event_type,
                                      event_id=event.event_id, error=str(exc))

            if event.event_id:
                try:
                    self.store.mark_processed(event.event_id, event.event_type, str(event.order_id))
                except StoreError as exc:
                    logger.error(
                        "failed to record processed event",
                        extra={"event_type": event.event_type, "event_id": event.event_id, "error": str(exc)},
                    )
                    return DeliveryResult(Outcome.FAILED, event_type=event.event_type,
                                          event_id=event.event_id, error=str(exc))
            logger.info(
                "order event processed",
                extra={"event_type": event.event_type, "event_id": event.event_id,
                       "order_id": str(event.order_id)},
            )
            return DeliveryResult(Outcome.PROCESSED, event_type=event.event_type, event_id=event.event_id)

    # ---- per-type handlers ----
    def handle_created(self, event: ReceivedEvent) -> None:
        self.notifications.send("order_created", event.email, event.order_id,
                                {"total_amount": str(event.total_amount), "currency": event.currency},
                                event.key())
        self.warehouse.reserve(event.order_id, event.item_count, event.key())

    def handle_confirmed(self, event: ReceivedEvent) -> None:
        self.payments.capture(event.order_id, event.total_amount, event.currency, event.key())
        self.notifications.send("order_confirmed", event.email, event.order_id, {}, event.key())

    def handle_cancelled(self, event: ReceivedEvent) -> None:
        order = self.store.get_order(event.order_id)
        self.warehouse.release(order.id, event.key())
        self.payments.refund(order.id, order.total_amount, order.currency, event.key())
        self.notifications.send("order_cancelled", order.email, order.id,
                                {"reason": event.data.get("change_reason", "")}, event.key())

    def handle_shipped(self, event: ReceivedEvent) -> None:
        tracking = tracking_number(event.order_id)
        self.notifications.send("order_shipped", event.email, event.order_id,
                                {"tracking_number": tracking}, event.key())

    def handle_delivered(self, event: ReceivedEvent) -> None:
        self.notifications.send("order_delivered", event.email, event.order_id, {}, event.key())

    def handle_refunded(self, event: ReceivedEvent) -> None:
        order = self.store.get_order(event.order_id)
        self.payments.refund(order.id, order.total_amount, order.currency, event.key())
        self.notifications.send("order_refunded", order.email, order.id,
                                {"amount": str(order.total_amount)}, event.key())

    def handle_generic(self, event: ReceivedEvent, headers: Mapping[str, str], size: int) -> None:
        logger.info(
            "unhandled order event type",
            extra={"event_type": event.event_type or "-", "order_id": str(event.order_id),
                   "headers": dict(headers), "body_size": size},
        )
