"""Middleware that assigns and propagates a request identifier.

Every incoming HTTP request receives a request identifier. The identifier
is read from the incoming ``X-Request-Id`` header when provided by the
client, or generated server-side otherwise. The middleware stores the id on
the ``request`` object and in a context variable so logging filters, the
order use cases and the event publisher can read it without passing the
value explicitly.

Behavior contract:
- If the incoming request contains the ``X-Request-Id`` header, that value
  is reused as the request id.
- Otherwise a new UUIDv4 is generated.
- The response will include the same id in the ``X-Request-ID`` header.
- The context variable is restored once the response is produced, so a
  worker thread never leaks one request's id into the next.
"""

import contextvars
import uuid

from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): The name of the incoming HTTP header (in Django's
            ``request.META`` casing) that may contain a client-provided id.
        RESPONSE_HEADER (str): The name of the header returned on responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Add the request id header and reset the context variable."""
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response
