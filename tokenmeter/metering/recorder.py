"""
Durable usage recorder.

Accumulates token usage per model and calendar window period (minute, hour
and day, aligned to UTC) in the ``token_consumption_stats`` table, for
reporting beyond the lifetime of the Redis counters.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from tokenmeter.models.base import utcnow
from tokenmeter.models.usage import TokenConsumptionStats
from tokenmeter.observability.tracing import get_tracer, trace_span, add_span_attributes
from .metrics import record_store_failure
from .types import TokenUsage, WindowKind

logger = logging.getLogger(__name__)
tracer = get_tracer("metering.recorder")


def window_bounds(window: WindowKind, at: datetime) -> Tuple[datetime, datetime]:
    """Start and end of the calendar period of ``window`` containing ``at``."""
    if window == WindowKind.MINUTE:
        start = at.replace(second=0, microsecond=0)
    elif window == WindowKind.HOUR:
        start = at.replace(minute=0, second=0, microsecond=0)
    else:
        start = at.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(seconds=window.seconds)


class DurableUsageRecorder:
    """
    Upserts one row per (provider, model, window period).

    All windows of one usage event are written in a single transaction.
    ``persist`` never raises: database failures are logged, rolled back and
    reported as False.
    """

    def __init__(
        self,
        session_factory=None,
        windows: Iterable[WindowKind] = (WindowKind.MINUTE, WindowKind.HOUR, WindowKind.DAY),
        clock: Callable[[], datetime] = utcnow,
    ):
        if session_factory is None:
            from tokenmeter.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.windows = tuple(windows)
        self.clock = clock

    def persist(self, provider_id: str, model_id: str, usage: TokenUsage) -> bool:
        now = self.clock()

        with trace_span(tracer, "metering.persist_usage") as span:
            add_span_attributes(span, {
                "llm.provider_id": provider_id,
                "llm.model_id": model_id,
                "llm.tokens.total": usage.total_tokens,
            })

            db = self.session_factory()
            try:
                try:
                    self._upsert_windows(db, provider_id, model_id, now, usage)
                except IntegrityError:
                    # A concurrent writer created one of the rows first
                    db.rollback()
                    self._upsert_windows(db, provider_id, model_id, now, usage)
                return True
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to persist token usage for {provider_id}:{model_id}: {e}")
                record_store_failure("recorder.persist")
                add_span_attributes(span, {"llm.persist.error": str(e)})
                return False
            finally:
                db.close()

    def _upsert_windows(self, db, provider_id, model_id, now: datetime, usage: TokenUsage) -> None:
        """All windows in one transaction: either every row is updated or none is."""
        for window in self.windows:
            window_start, window_end = window_bounds(window, now)

            if self._increment_existing(db, provider_id, model_id, window, window_start, now, usage):
                continue

            db.add(TokenConsumptionStats(
                provider_id=provider_id,
                model_id=model_id,
                window_type=window.value,
                window_start=window_start,
                window_end=window_end,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                request_count=1,
                last_updated=now,
            ))
            db.flush()

        db.commit()

    @staticmethod
    def _increment_existing(db, provider_id, model_id, window, window_start, now, usage) -> bool:
        updated = (
            db.query(TokenConsumptionStats)
            .filter(
                TokenConsumptionStats.provider_id == provider_id,
                TokenConsumptionStats.model_id == model_id,
                TokenConsumptionStats.window_type == window.value,
                TokenConsumptionStats.window_start == window_start,
            )
            .update(
                {
                    TokenConsumptionStats.prompt_tokens: TokenConsumptionStats.prompt_tokens + usage.prompt_tokens,
                    TokenConsumptionStats.completion_tokens: TokenConsumptionStats.completion_tokens + usage.completion_tokens,
                    TokenConsumptionStats.total_tokens: TokenConsumptionStats.total_tokens + usage.total_tokens,
                    TokenConsumptionStats.request_count: TokenConsumptionStats.request_count + 1,
                    TokenConsumptionStats.last_updated: now,
                },
                synchronize_session=False,
            )
        )
        return updated > 0

    def usage_summary(
        self,
        provider_id: str,
        model_id: str,
        window_type: str = "day",
        since: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Totals over stored periods of one window type, optionally from ``since`` on."""
        window = WindowKind(window_type)

        db = self.session_factory()
        try:
            query = db.query(
                func.sum(TokenConsumptionStats.total_tokens).label("total_tokens"),
                func.sum(TokenConsumptionStats.prompt_tokens).label("prompt_tokens"),
                func.sum(TokenConsumptionStats.completion_tokens).label("completion_tokens"),
                func.sum(TokenConsumptionStats.request_count).label("request_count"),
                func.count(TokenConsumptionStats.id).label("periods"),
            ).filter(
                TokenConsumptionStats.provider_id == provider_id,
                TokenConsumptionStats.model_id == model_id,
                TokenConsumptionStats.window_type == window.value,
            )
            if since is not None:
                query = query.filter(TokenConsumptionStats.window_start >= since)

            result = query.first()
            return {
                "provider_id": provider_id,
                "model_id": model_id,
                "window_type": window.value,
                "total_tokens": result.total_tokens or 0,
                "prompt_tokens": result.prompt_tokens or 0,
                "completion_tokens": result.completion_tokens or 0,
                "request_count": result.request_count or 0,
                "periods": result.periods or 0,
            }
        finally:
            db.close()
