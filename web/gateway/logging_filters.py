"""Logging filters for enriching log records with request context.

Adding ``RequestIdFilter`` to a handler gives every record a
``request_id`` attribute taken from the ContextVar set by the gateway
middleware, so JSON log lines of one request can be correlated without
touching individual log statements.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    If no request is in flight the ContextVar default ("-") is used, so
    formatters can always reference ``request_id``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        return True
