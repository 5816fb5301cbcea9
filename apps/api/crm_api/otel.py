"""Tracing: one process-wide tracer provider plus FastAPI server spans.

Exporters are driven by settings; tests attach an in-memory exporter instead.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_api.core.config import Settings, get_settings
from crm_api.core.context import CORRELATION_HEADER

_provider: TracerProvider | None = None
_exporters_attached = False


def tracer_provider(settings: Settings) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {"service.name": settings.otel_service_name, "service.version": settings.app_version}
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings) -> TracerProvider | None:
    global _exporters_attached
    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings)
    if not _exporters_attached:
        if settings.otel_exporter_otlp_endpoint:
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
            )
        if settings.otel_console_exporter:
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        _exporters_attached = True
    return provider


def setup_inmemory_otel(settings: Settings | None = None) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(settings or get_settings()).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def _tag_correlation_id(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    wanted = CORRELATION_HEADER.encode("latin-1")
    for name, value in scope.get("headers", []):
        if name == wanted:
            span.set_attribute("correlation_id", value.decode("latin-1"))
            return


def instrument_app(app: FastAPI) -> None:
    if getattr(app, "_is_instrumented_by_opentelemetry", False):
        return
    FastAPIInstrumentor().instrument_app(app, server_request_hook=_tag_correlation_id)
