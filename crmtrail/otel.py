from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crmtrail.core.config import Settings, get_settings


_provider: TracerProvider | None = None
_exporters_configured = False


def build_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": settings.app_version,
            "deployment.environment": settings.app_env,
        }
    )


def _tracer_provider(settings: Settings) -> TracerProvider:
    global _provider

    # The global provider can only be installed once per process.
    if _provider is None:
        _provider = TracerProvider(resource=build_resource(settings))
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings | None = None) -> TracerProvider | None:
    """Install span exporters for the API process when ``OTEL_ENABLED`` is set."""
    global _exporters_configured

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings)
    if _exporters_configured:
        return provider
    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_configured = True
    return provider


def capture_spans(settings: Settings | None = None) -> InMemorySpanExporter:
    provider = _tracer_provider(settings or get_settings())
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    """Tag the server span with the caller's correlation id so traces join the audit log lines."""
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    correlation_raw = headers.get(b"x-correlation-id")
    if correlation_raw:
        span.set_attribute("crmtrail.correlation_id", correlation_raw.decode("utf-8"))
