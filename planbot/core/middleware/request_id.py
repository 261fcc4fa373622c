import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from planbot.core.logging import latency_bucket_ms, request_id_ctx_var, tg_id_ctx_var

logger = logging.getLogger("planbot.http")

# Client-supplied ids are echoed into logs and headers, so keep them tame
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_PROBE_PATHS = frozenset({"/healthz", "/readyz"})


def pick_request_id(incoming):
    if incoming and _ACCEPTED_ID.match(incoming):
        return incoming
    return uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate every request with an id and log one line when it finishes.

    Health probes are logged at DEBUG, 5xx responses at WARNING.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = pick_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        tg_token = tg_id_ctx_var.set(None)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            tg_id_ctx_var.reset(tg_token)
            request_id_ctx_var.reset(rid_token)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[self.header_name] = rid

        if request.url.path in _PROBE_PATHS:
            level = logging.DEBUG
        elif response.status_code >= 500:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "http %s %s -> %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={"request_id": rid, "latency_bucket": latency_bucket_ms(elapsed_ms)},
        )
        return response
