import logging

from opentelemetry import trace

from fibertrace.config import settings

logger = logging.getLogger(__name__)

_TRACER_NAME = "fibertrace"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer.

    Without a configured TracerProvider the API hands out no-op spans, so
    callers never need to check whether tracing is active.
    """
    return trace.get_tracer(name or _TRACER_NAME)


def setup_otel(app) -> None:
    """Instrument the FastAPI app when OTEL_ENABLED is set.

    The SDK and instrumentation packages are optional extras; a missing
    package is logged and skipped.
    """
    if not settings.otel_enabled:
        return

    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.exception("OpenTelemetry SDK not available, skipping setup.")
        return

    resource = Resource.create({"service.name": settings.otel_service_name})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
        logger.info("OTel: FastAPI instrumented")
    except ImportError:
        logger.warning("OTel: FastAPI instrumentation unavailable", exc_info=True)

    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
        logger.info("OTel: httpx instrumented")
    except ImportError:
        logger.warning("OTel: httpx instrumentation unavailable", exc_info=True)

    logger.info("OpenTelemetry tracing enabled (service=%s)", settings.otel_service_name)
