import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from memoryopt.tracing import async_span


@pytest.mark.asyncio
async def test_async_span_records_attributes():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracer = provider.get_tracer("test")

    async with async_span("memoryopt.create_batch", tracer, table="facts", count=3):
        pass

    (span,) = exporter.get_finished_spans()
    assert span.name == "memoryopt.create_batch"
    assert span.attributes["table"] == "facts"
    assert span.attributes["count"] == 3
