"""Prometheus metrics for both services.

Every series carries a `service` label so the payments and notification
processes can share one dashboard.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


_LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

# Order ledger and reconciliation outcomes.
orders_created_total = Counter(
    "payment_orders_created_total", "Gateway orders created and persisted", ["service", "purpose"]
)
payment_verifications_total = Counter(
    "payment_verifications_total", "Checkout callback verifications by outcome", ["service", "outcome"]
)
payment_captured_total = Counter(
    "payment_captured_total", "Orders moved to paid, by the path that got there first", ["service", "source"]
)
payment_failure_total = Counter("payment_failure_total", "Orders moved to failed", ["service"])
payment_amount_mismatch_total = Counter(
    "payment_amount_mismatch_total", "Captures confirmed for a different amount than ordered", ["service"]
)
duplicate_capture_total = Counter(
    "duplicate_capture_total", "Second transactions captured against an already-paid order", ["service"]
)
retries_total = Counter("retries_total", "Transitions retried after losing a race", ["service", "dependency"])

# Webhook intake.
webhook_events_total = Counter(
    "webhook_events_total", "Gateway webhook deliveries by result", ["service", "event_type", "status"]
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total", "Webhook deliveries or envelopes already handled", ["service", "topic"]
)

# Outbound gateway calls.
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment gateway call latency",
    ["service", "operation"],
    buckets=_LATENCY_BUCKETS,
)
gateway_errors_total = Counter("gateway_errors_total", "Failed payment gateway calls", ["service", "operation"])

# HTTP surface.
http_requests_total = Counter(
    "http_requests_total", "HTTP requests served", ["service", "route", "method", "status_code"]
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request handling time",
    ["service", "route", "method"],
    buckets=_LATENCY_BUCKETS,
)

# Outbox and Kafka.
outbox_pending_total = Gauge("outbox_pending_total", "Outbox rows not yet acknowledged by Kafka", ["service"])
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds", "Age of the oldest unacknowledged outbox row", ["service"]
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds", "Time from envelope creation to consumption", ["service", "topic"]
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
