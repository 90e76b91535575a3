from __future__ import annotations

import os
import uuid
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from renewals.context import get_correlation_id


_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str, run_mode: str | None = None) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    attributes: dict[str, str] = {
        "service.name": service_name,
        "service.version": os.getenv("APP_VERSION", "0.1.0"),
    }
    if run_mode:
        attributes["deployment.environment"] = run_mode
    _provider = TracerProvider(resource=Resource.create(attributes))
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool, run_mode: str | None = None) -> TracerProvider | None:
    """Install the tracer provider once, with OTLP and console exporters taken from the environment."""
    global _configured

    if not enable:
        return None

    provider = _get_or_create_provider(service_name, run_mode)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = "renewals") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name, "test")
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def tag_run_span(span: Span, function_name: str, trigger_source: str, run_id: uuid.UUID | str | None) -> None:
    span.set_attribute("function_name", function_name)
    span.set_attribute("trigger_source", trigger_source)
    if run_id is not None:
        span.set_attribute("run_id", str(run_id))
    correlation_id = get_correlation_id()
    if correlation_id:
        span.set_attribute("correlation_id", correlation_id)


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        if scope.get("path", "").startswith("/renewals/"):
            span.set_attribute("renewals.operation", scope["path"].removeprefix("/renewals/").split("/", 1)[0])

    return server_request_hook
