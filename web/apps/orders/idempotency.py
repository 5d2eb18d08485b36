"""Idempotency utilities for safely handling duplicate create requests.

This module stores and retrieves idempotency keys to de-duplicate client
retries of ``POST /api/orders/``. It supports creating an idempotent record,
detecting conflicts when the same key is used with a different payload, and
finalizing a stored response so subsequent retries can short-circuit
without creating (and announcing) a second order.
"""

import hashlib
import json

from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction

from .errors import OrderError
from .models import IdempotencyKey


class IdempotencyConflict(OrderError):
    """The key was already used with a different payload."""

    kind = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"idempotency key {key!r} was used with a different payload")


class IdempotencyInFlight(IdempotencyConflict):
    """The key's first request has not produced a response yet."""

    retryable = True

    def __init__(self, key: str):
        self.key = key
        OrderError.__init__(self, f"request with idempotency key {key!r} is still in progress")


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), cls=DjangoJSONEncoder)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return
          ``(False, rec)``; the caller processes the request and finalizes.
        - Same key and same payload: lock the row and return ``(True, rec)``
          so the stored response can be replayed.
        - Same key, different payload: raise ``IdempotencyConflict``.
        - Same key whose first request has no stored response yet: raise
          ``IdempotencyInFlight`` instead of replaying an empty response.

    The create path runs in a nested savepoint so an ``IntegrityError``
    only rolls back that block; the existing-record path takes a row lock
    (SELECT ... FOR UPDATE) to avoid races under concurrency.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``.

    Raises:
        IdempotencyConflict: If the key exists with another payload hash.
        IdempotencyInFlight: If the key exists but is not finalized.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key)
        if not rec.response_status:
            raise IdempotencyInFlight(key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Args:
        rec: The idempotency record to update.
        status_code: HTTP status code to store for the response.
        body: JSON-serializable response body to persist.
        order_id: Optional id of the created order.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def release(rec: IdempotencyKey):
    """Forget a key whose request failed transiently so a retry can run again."""
    IdempotencyKey.objects.filter(key=rec.key).delete()
