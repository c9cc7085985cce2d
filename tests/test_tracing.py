import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from tokenmeter.observability import tracing


@pytest.fixture
def exporter(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "_tracer_provider", provider)
    monkeypatch.setattr(tracing, "_tracing_configured", True)
    return exporter


def test_disabled_tracing_yields_no_span(monkeypatch):
    monkeypatch.setattr(tracing, "_tracer_provider", None)
    monkeypatch.setattr(tracing, "_tracing_configured", True)

    with tracing.trace_span(tracing.get_tracer("test"), "metering.check_quota") as span:
        tracing.add_span_attributes(span, {"llm.model": "gpt-4.1"})

    assert span is None


def test_disabled_tracing_propagates_errors(monkeypatch):
    monkeypatch.setattr(tracing, "_tracer_provider", None)

    with pytest.raises(KeyError):
        with tracing.trace_span(tracing.get_tracer("test"), "metering.check_quota"):
            raise KeyError("boom")


def test_span_attributes_recorded(exporter):
    tracer = tracing._tracer_provider.get_tracer("test")

    with tracing.trace_span(tracer, "metering.check_quota", {"llm.provider": "azure"}) as span:
        tracing.add_span_attributes(span, {"llm.quota.allowed": False, "llm.quota.reason": None})

    (finished,) = exporter.get_finished_spans()
    assert finished.name == "metering.check_quota"
    assert finished.attributes["llm.provider"] == "azure"
    assert finished.attributes["llm.quota.allowed"] is False
    assert "llm.quota.reason" not in finished.attributes


def test_span_marked_as_error(exporter):
    tracer = tracing._tracer_provider.get_tracer("test")

    with pytest.raises(ConnectionError):
        with tracing.trace_span(tracer, "metering.record_usage"):
            raise ConnectionError("store unreachable")

    (finished,) = exporter.get_finished_spans()
    assert finished.status.status_code == StatusCode.ERROR
