"""OpenTelemetry setup helpers used by each FastAPI service."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from civicpay.common.config import settings


tracer = trace.get_tracer("civicpay")


def setup_tracing(service_name: str) -> None:
    """Create and register a tracer provider; export only when an endpoint is configured."""

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)


@contextmanager
def gateway_span(operation: str, **attributes):
    """Client span around one outbound payment-gateway call."""

    with tracer.start_as_current_span(f"gateway.{operation}", kind=trace.SpanKind.CLIENT) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"gateway.{key}", value)
        yield span
