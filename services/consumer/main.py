"""Order event consumer service built with FastAPI.

The broker's HTTP push bridge POSTs each order event record to
``/deliver``: the record value as the JSON body and the record headers
(``event-type``, ``event-id``, ...) as HTTP headers. The response tells the
bridge whether to acknowledge the record (200) or redeliver it later (503).
Processing is delegated to ``handlers.EventConsumer``.
"""

import contextvars
import logging
import os
import time
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from handlers import EventConsumer
from repo import ConsumerStore, make_engine

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        return True


# logger JSON
logger = logging.getLogger("consumer")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    h.addFilter(RequestIdFilter())
    logger.addHandler(h)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

app = FastAPI(title="Order Event Consumer")

engine = make_engine()
store = ConsumerStore(engine)
consumer = EventConsumer(store)


def get_consumer() -> EventConsumer:
    return consumer


@app.on_event("startup")
def _startup_db():
    # brief active wait until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    store.init_db()


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/deliver")
async def deliver(request: Request, consumer: EventConsumer = Depends(get_consumer)):
    """Process one pushed event record.

    Returns:
        JSONResponse: 200 with ``{"outcome", "event_type", "event_id"}``
        when the record may be acknowledged, 503 when it must be
        redelivered.
    """
    body = await request.body()
    result = await run_in_threadpool(consumer.deliver, body, dict(request.headers))
    payload = {"outcome": result.outcome.value, "event_type": result.event_type, "event_id": result.event_id}
    if not result.ack:
        payload["error"] = result.error
        return JSONResponse(payload, status_code=503)
    return JSONResponse(payload, status_code=200)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    token = REQUEST_ID_CTX.set(rid)
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"path": request.url.path, "method": request.method})
        REQUEST_ID_CTX.reset(token)
    response.headers["X-Request-ID"] = rid
    return response
