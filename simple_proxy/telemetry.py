import logging
from typing import Optional, Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

logger = logging.getLogger("uvicorn.error")

app_info = Info("simple_proxy_app_info", "Application Info")

_tracer_provider: Optional[TracerProvider] = None


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Every proxied body chunk would otherwise produce its own span.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracer_provider(
    service_name: str, otlp_endpoint: Optional[str], otlp_headers: str = ""
) -> TracerProvider:
    """Install the process-wide tracer provider once; later calls reuse it."""
    global _tracer_provider
    if _tracer_provider is not None:
        return _tracer_provider

    _tracer_provider = TracerProvider(
        resource=Resource.create({"service.name": service_name})
    )
    if otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint,
            headers=otlp_headers or None,
        )
        _tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"Exporting traces to {otlp_endpoint}")
    trace.set_tracer_provider(_tracer_provider)
    return _tracer_provider


def instrument_app(
    app: FastAPI,
    service_name: str,
    otlp_endpoint: Optional[str] = None,
    otlp_headers: str = "",
    metrics_path: Optional[str] = None,
) -> None:
    tracer_provider = configure_tracer_provider(
        service_name, otlp_endpoint, otlp_headers
    )
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)

    if metrics_path:
        # The metrics path is served locally and therefore never proxied
        Instrumentator().instrument(app).expose(
            app, endpoint=metrics_path, include_in_schema=False
        )
        logger.info(f"Prometheus metrics exposed at {metrics_path}")

    app_info.info({"app_name": service_name})
