"""Error taxonomy for the orders domain.

Every error carries a machine-readable ``kind`` and a human-readable
message. ``retryable`` tells callers whether the failure is transient
(infrastructure) or caused by the request itself (validation, business
rules, missing orders), so the HTTP layer and the event consumer can decide
whether a retry makes sense.
"""


class OrderError(Exception):
    """Base class for all order errors."""

    kind = "ORDER_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"

    def to_dict(self) -> dict:
        """Serializable representation used by the HTTP layer."""
        return {"kind": self.kind, "detail": self.message, "retryable": self.retryable}


class ValidationError(OrderError, ValueError):
    """Malformed or out-of-range input. Never retried."""

    kind = "VALIDATION_ERROR"


class InvalidStatusTransition(OrderError):
    """A status change not allowed by the order state machine."""

    kind = "INVALID_STATUS_TRANSITION"

    def __init__(self, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"cannot transition from {_value(from_status)} to {_value(to_status)}"
        )


class OrderNotFound(OrderError):
    kind = "ORDER_NOT_FOUND"

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"order with ID {order_id} not found")


class ConcurrentModification(OrderError):
    """The stored order changed between read and write (stale version)."""

    kind = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, order_id, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"order {order_id} was modified concurrently (expected version {expected_version})"
        )


class PersistenceError(OrderError):
    """Wraps storage failures (constraint violations, connectivity)."""

    kind = "PERSISTENCE_ERROR"
    retryable = True


class PublishError(OrderError):
    """The event transport refused or could not be reached."""

    kind = "PUBLISH_ERROR"
    retryable = True


class OperationCancelled(OrderError):
    """The caller's deadline passed or the call was cancelled."""

    kind = "OPERATION_CANCELLED"
    retryable = True


def _value(status) -> str:
    return getattr(status, "value", status)
