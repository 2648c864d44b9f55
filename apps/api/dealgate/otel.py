from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from dealgate.context import get_correlation_id
from dealgate.core.config import get_settings


_tracer_provider: TracerProvider | None = None
_exporters_attached = False


def _provider(service_name: str) -> TracerProvider:
    # The global provider can only be installed once per process.
    global _tracer_provider

    if _tracer_provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _tracer_provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_tracer_provider)
    return _tracer_provider


def setup_otel(service_name: str | None = None) -> TracerProvider | None:
    """Attach the configured span exporters; returns None while tracing is disabled."""
    global _exporters_attached

    settings = get_settings()
    if not settings.otel_enabled:
        return None

    provider = _provider(service_name or settings.otel_service_name)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "dealgate-tests") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def enforcement_span(name: str, attributes: dict[str, str]) -> Iterator[Span]:
    with trace.get_tracer("dealgate.enforcement").start_as_current_span(name) as span:
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield span


def server_request_hook(span: Span | None, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    for header, value in scope.get("headers", []):
        if header == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("latin-1"))
            return
