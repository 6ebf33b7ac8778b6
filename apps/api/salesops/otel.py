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

from salesops.platform.security.context import ActorContext


DOMAIN_TRACER = "salesops.domain"

_exporters_attached = False
_provider: TracerProvider | None = None


def _provider_for(service_name: str, environment: str | None = None) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    attributes: dict[str, Any] = {
        "service.name": service_name,
        "service.version": os.getenv("APP_VERSION", "0.1.0"),
    }
    if environment:
        attributes["deployment.environment"] = environment
    _provider = TracerProvider(resource=Resource.create(attributes))
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool, environment: str | None = None) -> TracerProvider | None:
    """Install the process tracer provider and its exporters.

    OTLP export is attached when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, console
    export when ``OTEL_CONSOLE_EXPORTER=true``. Calling this twice does not
    duplicate exporters.
    """
    global _exporters_attached

    if not enable:
        return None

    provider = _provider_for(service_name, environment)
    if _exporters_attached:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "salesops-api") -> InMemorySpanExporter:
    provider = _provider_for(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str = DOMAIN_TRACER) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def domain_span(name: str, ctx: ActorContext | None = None, **attributes: Any) -> Iterator[Span]:
    """Span around one quotation or payment operation.

    Actor, company and correlation id are taken from ``ctx``; ``None`` values
    in ``attributes`` are skipped since span attributes cannot hold them.
    """
    with get_tracer().start_as_current_span(name) as span:
        if ctx is not None:
            span.set_attribute("actor_id", ctx.user_id)
            span.set_attribute("company_id", ctx.company_id or "")
            span.set_attribute("correlation_id", ctx.correlation_id or "")
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, str(value))
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        company_raw = headers.get(b"x-company-id")
        if company_raw:
            span.set_attribute("company_id", company_raw.decode("utf-8"))

    return server_request_hook
