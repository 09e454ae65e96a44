"""Request middleware shared by the payments and notification apps."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request

from civicpay.common.logging import trace_id_ctx
from civicpay.common.metrics import http_request_duration_seconds, http_requests_total


CORRELATION_HEADER = "x-correlation-id"


def install_request_middleware(app: FastAPI, service_name: str) -> None:
    """Bind a correlation id per request and record count/latency by route template."""

    @app.middleware("http")
    async def observe_request(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        token = trace_id_ctx.set(correlation_id)
        started = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            # Template path ("/payments/{payment_id}") keeps label cardinality bounded.
            route = getattr(request.scope.get("route"), "path", None) or "unmatched"
            labels = {"service": service_name, "route": route, "method": request.method}
            http_request_duration_seconds.labels(**labels).observe(max(0.0, perf_counter() - started))
            http_requests_total.labels(**labels, status_code=str(status_code)).inc()
            trace_id_ctx.reset(token)
