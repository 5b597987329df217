from __future__ import annotations

from contextlib import asynccontextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

tracer = trace.get_tracer("memoryopt")


def configure_tracing(url: str, service_name: str = "memoryopt") -> TracerProvider:
    """Export spans to an OTLP collector at ``url``."""
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=url, timeout=5)))
    trace.set_tracer_provider(provider)
    return provider


@asynccontextmanager
async def async_span(name: str, tracer_obj=None, **attrs):
    """Async context manager wrapping ``tracer.start_as_current_span``."""
    tracer_obj = tracer_obj or tracer
    with tracer_obj.start_as_current_span(name, attributes=attrs or None) as span:
        yield span


__all__ = ["tracer", "configure_tracing", "async_span"]
