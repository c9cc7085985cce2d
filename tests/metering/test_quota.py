"""
Unit tests for the quota engine.

Tests limit ordering, boundary semantics, fail-open behaviour and
input validation.
"""

import pytest

from tokenmeter.metering.counters import UsageCounterStore
from tokenmeter.metering.directory import QuotaRecord
from tokenmeter.metering.metrics import get_metrics_collector
from tokenmeter.metering.quota import QuotaCheckResult, QuotaEngine, TokenStats, evaluate_quota
from tokenmeter.metering.types import TokenUsage
from tests.conftest import AZURE_ID, GEMINI_ID, GOOGLE_ID, GPT_ID, BrokenBackend


@pytest.fixture
def quota_engine(directory, counters):
    return QuotaEngine(directory, counters)


def quota(**limits):
    return QuotaRecord(id="q", model_id="m", **limits)


def test_no_quota_always_allowed():
    result = evaluate_quota(None, 10**9, TokenStats(current_minute_tokens=10**9))

    assert result.allowed is True
    assert result.reason is None
    assert result.quota is None


def test_per_message_boundary():
    limits = quota(max_tokens_per_message=500)

    assert evaluate_quota(limits, 500, TokenStats()).allowed is True

    denied = evaluate_quota(limits, 501, TokenStats())
    assert denied.allowed is False
    assert denied.reason == "Request tokens (501) exceed per-message limit (500)"
    assert denied.denied_dimension == "per-message"
    assert denied.quota is limits


def test_per_minute_scenario():
    limits = quota(max_tokens_per_minute=1000)
    stats = TokenStats(current_minute_tokens=900)

    denied = evaluate_quota(limits, 200, stats)
    assert denied.allowed is False
    assert "per-minute limit (1000)" in denied.reason
    assert "current 900 + requested 200" in denied.reason

    assert evaluate_quota(limits, 50, stats).allowed is True
    assert evaluate_quota(limits, 100, stats).allowed is True


def test_per_day_limit():
    limits = quota(max_tokens_per_day=5000)

    denied = evaluate_quota(limits, 10, TokenStats(last_24_hours_tokens=4995))
    assert denied.allowed is False
    assert denied.denied_dimension == "per-day"
    assert denied.reason.startswith("Request would exceed per-day limit (5000)")


def test_checks_run_in_order():
    """Per-message is reported even when every dimension is exceeded."""
    limits = quota(max_tokens_per_message=10, max_tokens_per_minute=10, max_tokens_per_day=10)
    stats = TokenStats(current_minute_tokens=100, last_24_hours_tokens=100)

    assert evaluate_quota(limits, 50, stats).denied_dimension == "per-message"
    assert evaluate_quota(limits, 5, stats).denied_dimension == "per-minute"


def test_unset_dimensions_are_unlimited():
    limits = quota(max_tokens_per_day=100)

    result = evaluate_quota(limits, 99, TokenStats(current_minute_tokens=10**6))
    assert result.allowed is True


def test_denial_carries_usage_snapshot():
    stats = TokenStats(current_minute_tokens=900, last_hour_tokens=1200, last_24_hours_tokens=3000, request_count=4)

    result = evaluate_quota(quota(max_tokens_per_minute=1000), 200, stats)

    assert result.current_usage == stats


@pytest.mark.parametrize("tokens", [-1, 1.5, "10", None, True])
def test_invalid_requested_tokens(quota_engine, tokens):
    with pytest.raises(ValueError):
        quota_engine.check_quota("azure", "gpt-4.1", tokens)


def test_unknown_identity_allowed(quota_engine):
    result = quota_engine.check_quota("anthropic", "claude", 10**9)

    assert result == QuotaCheckResult(allowed=True)


def test_model_without_quota_allowed(quota_engine):
    result = quota_engine.check_quota("google:gemini-2.5-pro", requested_tokens=10**9)

    assert result.allowed is True
    assert result.quota is None


def test_model_without_quota_reports_current_usage(quota_engine, counters):
    counters.record_usage(GOOGLE_ID, GEMINI_ID, TokenUsage(prompt_tokens=600, completion_tokens=100))

    result = quota_engine.check_quota("google", "gemini-2.5-pro", 10)

    assert result.allowed is True
    assert result.quota is None
    assert result.current_usage == TokenStats(
        current_minute_tokens=700,
        last_hour_tokens=700,
        last_24_hours_tokens=700,
        request_count=1,
    )


def test_model_without_quota_store_outage_is_degraded(directory):
    engine = QuotaEngine(directory, UsageCounterStore(BrokenBackend()))

    result = engine.check_quota("google", "gemini-2.5-pro", 10)

    assert result.allowed is True
    assert result.degraded is True
    assert result.current_usage == TokenStats()


def test_end_to_end_per_minute(quota_engine, counters):
    counters.record_usage(AZURE_ID, GPT_ID, TokenUsage(prompt_tokens=900))

    denied = quota_engine.check_quota("azure", "gpt-4.1", 200)
    assert denied.allowed is False
    assert "per-minute" in denied.reason
    assert denied.current_usage.current_minute_tokens == 900
    assert denied.current_usage.request_count == 1

    allowed = quota_engine.check_quota("azure-openai:gpt-4.1", requested_tokens=50)
    assert allowed.allowed is True
    assert allowed.quota.id == denied.quota.id


def test_check_does_not_reserve(quota_engine, counters):
    for _ in range(3):
        assert quota_engine.check_quota("azure", "gpt-4.1", 400).allowed is True

    assert quota_engine.check_quota("azure", "gpt-4.1", 0).current_usage == TokenStats()


def test_store_outage_fails_open(directory):
    engine = QuotaEngine(directory, UsageCounterStore(BrokenBackend()))

    result = engine.check_quota("azure", "gpt-4.1", 400)

    assert result.allowed is True
    assert result.degraded is True
    assert result.quota is not None
    assert get_metrics_collector().get_counter(
        "quota_checks_degraded_total", {"provider": "azure", "model": "gpt-4.1"}
    ) == 1


def test_store_outage_still_enforces_per_message(directory):
    engine = QuotaEngine(directory, UsageCounterStore(BrokenBackend()))

    result = engine.check_quota("azure", "gpt-4.1", 501)

    assert result.allowed is False
    assert result.denied_dimension == "per-message"


def test_denials_are_counted(quota_engine):
    quota_engine.check_quota("azure", "gpt-4.1", 501)
    collector = get_metrics_collector()

    assert collector.get_counter("quota_denied_total", {"provider": "azure", "model": "gpt-4.1"}) == 1
    assert collector.get_counter("quota_denied_by_dimension_total", {"dimension": "per-message"}) == 1


def test_result_as_dict(quota_engine):
    payload = quota_engine.check_quota("azure", "gpt-4.1", 10).as_dict()

    assert payload["allowed"] is True
    assert payload["quota"]["max_tokens_per_minute"] == 1000
    assert payload["current_usage"]["current_minute_tokens"] == 0
