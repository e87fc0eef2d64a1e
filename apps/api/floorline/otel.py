from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
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

from floorline.context import get_correlation_id, get_workflow_depth


SERVICE_NAME = "floorline-api"

_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": service_name,
                    "service.version": os.getenv("APP_VERSION", "0.1.0"),
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    """Install the tracer provider once; exporters come from OTEL_EXPORTER_OTLP_ENDPOINT / OTEL_CONSOLE_EXPORTER."""
    global _exporters_attached

    if not enable:
        return None

    provider = _provider_for(service_name)
    if _exporters_attached:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str):
    return trace.get_tracer(name)


@contextmanager
def workflow_run_span(workflow_id: int, trigger_type: str) -> Iterator[Span]:
    with get_tracer("floorline.workflows").start_as_current_span("workflow.run") as span:
        span.set_attribute("workflow.id", workflow_id)
        span.set_attribute("workflow.trigger_type", trigger_type)
        span.set_attribute("workflow.depth", get_workflow_depth() or 0)
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        correlation_raw = dict(scope.get("headers", [])).get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))

    return server_request_hook
