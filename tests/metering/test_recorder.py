"""
Tests for the durable usage recorder (SQLite in memory).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from tokenmeter.metering.recorder import DurableUsageRecorder, window_bounds
from tokenmeter.metering.types import TokenUsage, WindowKind
from tokenmeter.models import TokenConsumptionStats

START = datetime(2026, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


class SteppingClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def wall_clock():
    return SteppingClock(START)


@pytest.fixture
def recorder(session_factory, wall_clock):
    return DurableUsageRecorder(session_factory, clock=wall_clock)


def rows(session_factory, window_type=None):
    db = session_factory()
    try:
        query = db.query(TokenConsumptionStats)
        if window_type:
            query = query.filter(TokenConsumptionStats.window_type == window_type)
        return query.order_by(TokenConsumptionStats.window_start).all()
    finally:
        db.close()


def test_window_bounds():
    assert window_bounds(WindowKind.MINUTE, START) == (
        datetime(2026, 3, 14, 9, 26, tzinfo=timezone.utc),
        datetime(2026, 3, 14, 9, 27, tzinfo=timezone.utc),
    )
    assert window_bounds(WindowKind.HOUR, START)[0] == datetime(2026, 3, 14, 9, tzinfo=timezone.utc)
    assert window_bounds(WindowKind.DAY, START)[1] == datetime(2026, 3, 15, tzinfo=timezone.utc)


def test_persist_creates_one_row_per_window(recorder, session_factory):
    assert recorder.persist("p1", "m1", TokenUsage(prompt_tokens=100, completion_tokens=20)) is True

    stored = rows(session_factory)
    assert sorted(r.window_type for r in stored) == ["day", "hour", "minute"]
    for row in stored:
        assert row.total_tokens == 120
        assert row.prompt_tokens == 100
        assert row.completion_tokens == 20
        assert row.request_count == 1


def test_persist_increments_existing_period(recorder, session_factory, wall_clock):
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=100))
    wall_clock.now = START + timedelta(seconds=5)
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=50, completion_tokens=10))

    minute_rows = rows(session_factory, "minute")
    assert len(minute_rows) == 1
    assert minute_rows[0].total_tokens == 160
    assert minute_rows[0].request_count == 2


def test_new_period_gets_new_row(recorder, session_factory, wall_clock):
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=100))
    wall_clock.now = START + timedelta(minutes=2)
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=10))

    assert [r.total_tokens for r in rows(session_factory, "minute")] == [100, 10]
    assert [r.total_tokens for r in rows(session_factory, "hour")] == [110]


def test_recorder_window_subset(session_factory, wall_clock):
    recorder = DurableUsageRecorder(session_factory, windows=(WindowKind.DAY,), clock=wall_clock)

    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=1))

    assert [r.window_type for r in rows(session_factory)] == ["day"]


def test_concurrent_insert_falls_back_to_update(recorder, session_factory):
    """When another writer inserts the row first, the increment is retried."""
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=100))

    real_increment = DurableUsageRecorder._increment_existing
    calls = {"count": 0}

    def lose_first_race(db, *args):
        calls["count"] += 1
        if calls["count"] == 1:
            return False
        return real_increment(db, *args)

    recorder._increment_existing = lose_first_race
    assert recorder.persist("p1", "m1", TokenUsage(prompt_tokens=5)) is True

    assert rows(session_factory, "minute")[0].total_tokens == 105


def test_failed_window_rolls_back_every_window(recorder, session_factory):
    real_increment = DurableUsageRecorder._increment_existing

    def fail_on_day(db, provider_id, model_id, window, *args):
        if window == WindowKind.DAY:
            raise RuntimeError("disk full")
        return real_increment(db, provider_id, model_id, window, *args)

    recorder._increment_existing = fail_on_day

    assert recorder.persist("p1", "m1", TokenUsage(prompt_tokens=100)) is False
    assert rows(session_factory) == []


def test_persist_never_raises_on_database_error():
    session = MagicMock()
    session.query.side_effect = RuntimeError("database is down")
    recorder = DurableUsageRecorder(lambda: session)

    assert recorder.persist("p1", "m1", TokenUsage(prompt_tokens=1)) is False
    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_usage_summary(recorder, session_factory, wall_clock):
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=100, completion_tokens=20))
    wall_clock.now = START + timedelta(days=1)
    recorder.persist("p1", "m1", TokenUsage(prompt_tokens=30))
    recorder.persist("p1", "other", TokenUsage(prompt_tokens=999))

    summary = recorder.usage_summary("p1", "m1")

    assert summary["total_tokens"] == 150
    assert summary["prompt_tokens"] == 130
    assert summary["completion_tokens"] == 20
    assert summary["request_count"] == 2
    assert summary["periods"] == 2


def test_usage_summary_empty(recorder):
    summary = recorder.usage_summary("p1", "m1", window_type="hour")

    assert summary["total_tokens"] == 0
    assert summary["periods"] == 0


def test_usage_summary_rejects_unknown_window(recorder):
    with pytest.raises(ValueError):
        recorder.usage_summary("p1", "m1", window_type="week")
