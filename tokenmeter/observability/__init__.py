"""
Observability module for distributed tracing.
"""

from .tracing import get_tracer, configure_tracing, is_tracing_enabled, trace_span, add_span_attributes

__all__ = [
    "get_tracer",
    "configure_tracing",
    "is_tracing_enabled",
    "trace_span",
    "add_span_attributes",
]
