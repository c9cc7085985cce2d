"""
Centralized Tracing Utility

Provides OpenTelemetry-based tracing for quota checks and usage recording.
Supports configuration via settings and safe failure handling: tracing
problems are logged and never interrupt metering.
"""

import logging
from typing import Optional
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.trace import Status, StatusCode, Tracer

from tokenmeter.config import settings

logger = logging.getLogger(__name__)

# Global tracer provider
_tracer_provider: Optional[TracerProvider] = None
_tracing_configured = False


def configure_tracing():
    """
    Configure OpenTelemetry tracing.

    Settings:
    - TRACING_ENABLED: Enable/disable tracing (default: false)
    - TRACING_EXPORTER: console | otlp | none (default: console)
    - TRACING_SERVICE_NAME: Service name (default: tokenmeter)

    The OTLP exporter reads its endpoint from the standard
    OTEL_EXPORTER_OTLP_ENDPOINT environment variable.

    Safe Failure: If configuration fails, tracing is disabled but metering continues.
    """
    global _tracer_provider, _tracing_configured

    if _tracing_configured:
        return

    try:
        if not settings.TRACING_ENABLED:
            logger.info("Tracing is disabled via TRACING_ENABLED=false")
            _tracing_configured = True
            return

        service_name = settings.TRACING_SERVICE_NAME
        exporter_type = settings.TRACING_EXPORTER.lower()

        resource = Resource(attributes={
            SERVICE_NAME: service_name
        })
        _tracer_provider = TracerProvider(resource=resource)

        if exporter_type == "otlp":
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
            _tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            logger.info("OTLP tracing configured")

        elif exporter_type == "console":
            _tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            logger.info("Console tracing configured")

        elif exporter_type == "none":
            logger.info("Tracing exporter set to 'none' - no spans will be exported")

        else:
            logger.warning(f"Unknown exporter type: {exporter_type}. Tracing disabled.")
            _tracer_provider = None

        if _tracer_provider:
            trace.set_tracer_provider(_tracer_provider)

        _tracing_configured = True
        logger.info(f"Tracing configured successfully (service: {service_name})")

    except Exception as e:
        logger.error(f"Failed to configure tracing: {e}. Tracing will be disabled.")
        _tracer_provider = None
        _tracing_configured = True


def is_tracing_enabled() -> bool:
    """Return True if a tracer provider is installed."""
    return _tracer_provider is not None


def get_tracer(component: str) -> Tracer:
    """
    Get a tracer for the given component.

    Returns a no-op tracer when tracing is disabled.
    """
    if not _tracing_configured:
        configure_tracing()

    return trace.get_tracer(component)


@contextmanager
def trace_span(
    tracer: Tracer,
    span_name: str,
    attributes: Optional[dict] = None,
    set_status_on_exception: bool = True
):
    """
    Context manager for creating a traced span with safe error handling.

    Yields the span, or None when tracing is disabled. Exceptions raised by
    the wrapped block always propagate unchanged.

    Example:
        with trace_span(tracer, "metering.check_quota", {"llm.model": "gpt-4.1"}) as span:
            add_span_attributes(span, {"llm.quota.allowed": True})
    """
    if not is_tracing_enabled():
        yield None
        return

    with tracer.start_as_current_span(span_name, record_exception=False) as span:
        if attributes:
            add_span_attributes(span, attributes)

        try:
            yield span
        except Exception as e:
            if set_status_on_exception and span:
                set_span_error(span, e)
            raise


def set_span_error(span, error: Exception):
    """Mark a span as errored with exception details."""
    if span and is_tracing_enabled():
        try:
            span.set_status(Status(StatusCode.ERROR, str(error)))
            span.record_exception(error)
        except Exception as e:
            logger.error(f"Error setting span error: {e}")


def add_span_attributes(span, attributes: dict):
    """Add attributes to a span safely; None values are skipped."""
    if span and is_tracing_enabled():
        try:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        except Exception as e:
            logger.error(f"Error adding span attributes: {e}")
