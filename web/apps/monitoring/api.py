from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import publisher_circuit


def health_view(_request):
    """Report database reachability and the event publisher circuit state.

    The endpoint is unhealthy (503) only when the database is down; an open
    publisher circuit degrades event delivery but orders are still stored.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    circuit = publisher_circuit().state
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "events": {"ok": circuit != "OPEN", "circuit": circuit},
            },
        },
        status=code,
    )
