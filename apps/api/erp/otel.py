from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from erp.core.config import Settings
from erp.middleware.correlation_id import CORRELATION_HEADER, is_accepted_correlation_id


SERVICE_NAME = "erp-crm-api"

_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(settings: Settings | None = None) -> TracerProvider:
    global _provider
    if _provider is None:
        attributes = {
            "service.name": SERVICE_NAME,
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
        }
        if settings is not None:
            attributes["deployment.environment"] = settings.app_env
        _provider = TracerProvider(resource=Resource.create(attributes))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    """Install the SDK provider and exporters once; no-op when tracing is disabled."""
    global _exporters_attached
    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings)
    if not _exporters_attached:
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if endpoint:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        _exporters_attached = True
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider().add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def _server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    raw = headers.get(CORRELATION_HEADER.encode("latin-1"))
    value = raw.decode("latin-1").strip() if raw else ""
    if is_accepted_correlation_id(value):
        span.set_attribute("correlation_id", value)


def instrument_app(app: FastAPI) -> None:
    if getattr(app, "_is_instrumented_by_opentelemetry", False):
        return
    FastAPIInstrumentor().instrument_app(app, server_request_hook=_server_request_hook)
