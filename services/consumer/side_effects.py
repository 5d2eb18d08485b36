"""Side-effect ports used by the event handlers, with logging adapters.

``NotificationSender``, ``Warehouse`` and ``PaymentGateway`` are the seams
where real integrations (mail provider, WMS, payment processor) plug in.
The shipped adapters only log what they would do. Every call carries an
idempotency key ``"{event_type}:{order_id}"`` so a downstream system can
drop repeats.
"""

import logging
import uuid
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger("consumer.side_effects")


def idempotency_key(event_type: str, order_id) -> str:
    return f"{event_type}:{order_id}"


class NotificationSender(Protocol):
    def send(self, template: str, recipient: str, order_id: uuid.UUID, data: dict, key: str) -> None:
        raise NotImplementedError()


class Warehouse(Protocol):
    def reserve(self, order_id: uuid.UUID, item_count: int, key: str) -> None:
        raise NotImplementedError()

    def release(self, order_id: uuid.UUID, key: str) -> None:
        raise NotImplementedError()


class PaymentGateway(Protocol):
    def capture(self, order_id: uuid.UUID, amount: Decimal, currency: str, key: str) -> None:
        raise NotImplementedError()

    def refund(self, order_id: uuid.UUID, amount: Decimal, currency: str, key: str) -> None:
        raise NotImplementedError()


class LoggingNotificationSender(NotificationSender):
    def send(self, template: str, recipient: str, order_id: uuid.UUID, data: dict, key: str) -> None:
        logger.info(
            "notification sent",
            extra={"template": template, "recipient": recipient, "order_id": str(order_id),
                   "idempotency_key": key, "data": data},
        )


class LoggingWarehouse(Warehouse):
    def reserve(self, order_id: uuid.UUID, item_count: int, key: str) -> None:
        logger.info(
            "warehouse reservation requested",
            extra={"order_id": str(order_id), "item_count": item_count, "idempotency_key": key},
        )

    def release(self, order_id: uuid.UUID, key: str) -> None:
        logger.info(
            "warehouse release requested",
            extra={"order_id": str(order_id), "idempotency_key": key},
        )


class LoggingPaymentGateway(PaymentGateway):
    def capture(self, order_id: uuid.UUID, amount: Decimal, currency: str, key: str) -> None:
        logger.info(
            "payment capture requested",
            extra={"order_id": str(order_id), "amount": str(amount), "currency": currency,
                   "idempotency_key": key},
        )

    def refund(self, order_id: uuid.UUID, amount: Decimal, currency: str, key: str) -> None:
        logger.info(
            "refund requested",
            extra={"order_id": str(order_id), "amount": str(amount), "currency": currency,
                   "idempotency_key": key},
        )
