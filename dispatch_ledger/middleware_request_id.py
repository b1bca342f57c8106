"""Request correlation for the dispatch API.

Every request gets an ``X-Request-ID`` (the caller's, or a fresh one). It is
stored in a context variable so that service loggers (ride, ledger,
settlement) can stamp it on their records through ``RequestIDLogFilter``.
The same middleware records the HTTP metrics and writes one JSON access line.
"""
import contextvars
import json
import logging
import time
import uuid

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger("dispatch_ledger.request")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"

request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


class RequestIDLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        return True


def install_request_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIDLogFilter) for f in handler.filters):
            handler.addFilter(RequestIDLogFilter())


def _route_label(request: Request) -> str:
    # the route template keeps ride and request ids out of metric labels
    return getattr(request.scope.get("route"), "path", None) or request.url.path


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = req_id
        token = request_id_ctx.set(req_id)
        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
            elapsed = time.perf_counter() - start
            route = _route_label(request)
            REQ.labels(request.method, route, str(response.status_code)).inc()
            REQ_DURATION.labels(request.method, route).observe(elapsed)
            response.headers["X-Request-ID"] = req_id
            logger.info(json.dumps({
                "request_id": req_id,
                "method": request.method,
                "route": route,
                "status": response.status_code,
                "duration_ms": round(elapsed * 1000, 1),
            }))
            return response
        finally:
            request_id_ctx.reset(token)
