"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to use-case commands, delegate to the use cases obtained from
``providers.get_order_usecases()``, and render the result. Domain errors
are translated into ``{"kind", "detail", "retryable"}`` bodies with the
status codes in ``ERROR_STATUS``.

Every request runs under a ``CallContext`` carrying the request id and a
deadline of ``ORDER_REQUEST_TIMEOUT_SECS``.

Idempotency: when an ``Idempotency-Key`` header is provided, the create
endpoint stores the first response. Retries with the same payload replay it
with the ``Idempotent-Replay: true`` header; the same key with a different
payload returns 409 ``IDEMPOTENCY_CONFLICT``. Transient failures (503) do
not consume the key.
"""

from django.conf import settings
from pydantic import ValidationError as SchemaError
from rest_framework import status
from rest_framework.exceptions import ParseError
from rest_framework.response import Response
from rest_framework.views import APIView

from . import providers
from .domain import CallContext
from .errors import OrderError
from .idempotency import IdempotencyConflict, finalize, get_or_create_idempotent, release
from .schemas import CreateOrderDTO, ListOrdersQuery, UpdateStatusDTO, order_to_dict


ERROR_STATUS = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_STATUS_TRANSITION": status.HTTP_409_CONFLICT,
    "CONCURRENT_MODIFICATION": status.HTTP_409_CONFLICT,
    "IDEMPOTENCY_CONFLICT": status.HTTP_409_CONFLICT,
    "PERSISTENCE_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
    "OPERATION_CANCELLED": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _call_context(request) -> CallContext:
    return CallContext.with_timeout(
        getattr(settings, "ORDER_REQUEST_TIMEOUT_SECS", 30.0),
        request_id=getattr(request, "request_id", "-"),
    )


def _error_body(exc: OrderError) -> tuple[dict, int]:
    return exc.to_dict(), ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _error(exc: OrderError) -> Response:
    body, code = _error_body(exc)
    return Response(body, status=code)


def _schema_error(exc: Exception) -> Response:
    return Response(
        {"kind": "VALIDATION_ERROR", "detail": str(exc), "retryable": False},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _json_body(request) -> dict:
    data = request.data
    if not isinstance(data, dict):
        raise ParseError("request body must be a JSON object")
    return data


class OrdersCollectionView(APIView):
    """List orders (GET) and create an order (POST)."""

    def get(self, request):
        """List orders matching the query-string filters.

        Returns:
            Response: 200 with ``{orders, total_count, limit, offset}`` or
            400 for malformed filters.
        """
        try:
            query = ListOrdersQuery.from_query(request.query_params)
        except SchemaError as e:
            return _schema_error(e)
        try:
            result = providers.get_order_usecases().list.execute(
                query.to_filters(), ctx=_call_context(request)
            )
        except OrderError as e:
            return _error(e)
        return Response(
            {
                "orders": [order_to_dict(o) for o in result.orders],
                "total_count": result.total_count,
                "limit": result.limit,
                "offset": result.offset,
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following responses.
            - 201 with ``{order, message}`` when the order is created.
            - The stored response (with ``Idempotent-Replay: true``) when
              the same idempotency key and payload are retried.
            - 409 ``IDEMPOTENCY_CONFLICT`` when the key is reused with a
              different payload, or while the first request with that key
              is still running (``retryable: true``).
            - 400 ``VALIDATION_ERROR`` for malformed or invalid input.
            - 503 when persistence failed or the deadline passed.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(_json_body(request))
        except (SchemaError, ParseError) as e:
            return _schema_error(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except IdempotencyConflict as e:
                return _error(e)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Use case
        try:
            result = providers.get_order_usecases().create.execute(
                dto.to_command(), ctx=_call_context(request)
            )
        except OrderError as e:
            body, code = _error_body(e)
            if rec:
                if e.retryable:
                    release(rec)
                else:
                    finalize(rec, code, body)
            return Response(body, status=code)
        except Exception:
            if rec:
                release(rec)
            raise

        body = {"order": order_to_dict(result.order), "message": result.message}
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=result.order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class OrderDetailView(APIView):
    """Read (GET) or logically delete (DELETE) a single order."""

    def get(self, request, oid):
        try:
            order = providers.get_order_usecases().get.execute(oid, ctx=_call_context(request))
        except OrderError as e:
            return _error(e)
        return Response({"order": order_to_dict(order)}, status=status.HTTP_200_OK)

    def delete(self, request, oid):
        """Cancel the order; ``?reason=`` is recorded in the event."""
        reason = request.query_params.get("reason") or None
        try:
            result = providers.get_order_usecases().delete.execute(
                oid, reason=reason, ctx=_call_context(request)
            )
        except OrderError as e:
            return _error(e)
        return Response(
            {"order": order_to_dict(result.order), "message": result.message},
            status=status.HTTP_200_OK,
        )


class OrderStatusView(APIView):
    """Move an order through the status state machine (PUT)."""

    def put(self, request, oid):
        try:
            dto = UpdateStatusDTO.model_validate(_json_body(request))
        except (SchemaError, ParseError) as e:
            return _schema_error(e)
        try:
            result = providers.get_order_usecases().update_status.execute(
                oid, dto.new_status, reason=dto.reason, ctx=_call_context(request)
            )
        except OrderError as e:
            return _error(e)
        return Response(
            {
                "order": order_to_dict(result.order),
                "old_status": result.old_status.value,
                "new_status": result.new_status.value,
                "message": result.message,
            },
            status=status.HTTP_200_OK,
        )
