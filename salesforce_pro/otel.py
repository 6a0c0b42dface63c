"""Tracing bootstrap.

A single SDK tracer provider is installed per process. Exporters are attached from
settings (OTLP over HTTP and/or console); tests attach an in-memory exporter instead.
"""

from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from salesforce_pro.context import CORRELATION_HEADER
from salesforce_pro.core.config import Settings, get_settings

_CORRELATION_HEADER = CORRELATION_HEADER.encode("latin-1")

_provider: TracerProvider | None = None
_exporters_attached = False


def tracer_provider(service_name: str) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create({"service.name": service_name, "service.version": "0.1.0"})
        )
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    global _exporters_attached
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings.otel_service_name)
    if _exporters_attached:
        return provider
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str | None = None) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    provider = tracer_provider(service_name or get_settings().otel_service_name)
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    """Tags the server span with the caller's correlation id before any middleware runs."""
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == _CORRELATION_HEADER and value:
            span.set_attribute("correlation_id", value.decode("utf-8"))
            return
