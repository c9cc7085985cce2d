"""
Quota Engine

Decides whether a model call may proceed given the model's quota and its
current window usage. Checks run in a fixed order (per-message, per-minute,
per-day) and the first violated dimension produces the denial reason.

The check is optimistic: nothing is reserved, so concurrent callers may
jointly overshoot a window by the size of their in-flight requests.
Store failures never deny a call; the result is allowed and marked degraded.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from tokenmeter.observability.tracing import get_tracer, trace_span, add_span_attributes
from .counters import UsageCounterStore
from .directory import ModelDirectory, QuotaRecord
from .types import UsageAggregate, WindowKind
from .metrics import (
    record_quota_check,
    record_quota_denied_dimension,
    record_check_latency,
    update_minute_usage,
)

logger = logging.getLogger(__name__)
tracer = get_tracer("metering.quota")


@dataclass(frozen=True)
class TokenStats:
    """Current usage snapshot; ``request_count`` counts requests in the minute window."""

    current_minute_tokens: int = 0
    last_hour_tokens: int = 0
    last_24_hours_tokens: int = 0
    request_count: int = 0

    @classmethod
    def from_aggregates(cls, aggregates: Dict[WindowKind, UsageAggregate]) -> "TokenStats":
        minute = aggregates.get(WindowKind.MINUTE, UsageAggregate())
        return cls(
            current_minute_tokens=minute.total_tokens,
            last_hour_tokens=aggregates.get(WindowKind.HOUR, UsageAggregate()).total_tokens,
            last_24_hours_tokens=aggregates.get(WindowKind.DAY, UsageAggregate()).total_tokens,
            request_count=minute.request_count,
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "current_minute_tokens": self.current_minute_tokens,
            "last_hour_tokens": self.last_hour_tokens,
            "last_24_hours_tokens": self.last_24_hours_tokens,
            "request_count": self.request_count,
        }


@dataclass(frozen=True)
class QuotaCheckResult:
    allowed: bool
    reason: Optional[str] = None
    current_usage: TokenStats = field(default_factory=TokenStats)
    quota: Optional[QuotaRecord] = None
    degraded: bool = False

    @property
    def denied_dimension(self) -> Optional[str]:
        """``per-message``, ``per-minute`` or ``per-day`` for denials, else None."""
        if self.allowed or not self.reason:
            return None
        for dimension in ("per-message", "per-minute", "per-day"):
            if dimension in self.reason:
                return dimension
        return None

    def as_dict(self) -> Dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "current_usage": self.current_usage.as_dict(),
            "quota": self.quota.as_dict() if self.quota else None,
            "degraded": self.degraded,
        }


def validate_requested_tokens(requested_tokens) -> int:
    if isinstance(requested_tokens, bool) or not isinstance(requested_tokens, int):
        raise ValueError(f"requested_tokens must be an integer, got {type(requested_tokens).__name__}")
    if requested_tokens < 0:
        raise ValueError(f"requested_tokens must be non-negative, got {requested_tokens}")
    return requested_tokens


def evaluate_quota(
    quota: Optional[QuotaRecord],
    requested_tokens: int,
    stats: TokenStats,
) -> QuotaCheckResult:
    """
    Pure quota decision. Equality with a limit is allowed; only strictly
    exceeding it denies.
    """
    if quota is None:
        return QuotaCheckResult(allowed=True, current_usage=stats)

    limit = quota.max_tokens_per_message
    if limit and requested_tokens > limit:
        return QuotaCheckResult(
            allowed=False,
            reason=f"Request tokens ({requested_tokens}) exceed per-message limit ({limit})",
            current_usage=stats,
            quota=quota,
        )

    limit = quota.max_tokens_per_minute
    if limit and stats.current_minute_tokens + requested_tokens > limit:
        return QuotaCheckResult(
            allowed=False,
            reason=(
                f"Request would exceed per-minute limit ({limit}): "
                f"current {stats.current_minute_tokens} + requested {requested_tokens}"
            ),
            current_usage=stats,
            quota=quota,
        )

    limit = quota.max_tokens_per_day
    if limit and stats.last_24_hours_tokens + requested_tokens > limit:
        return QuotaCheckResult(
            allowed=False,
            reason=(
                f"Request would exceed per-day limit ({limit}): "
                f"current {stats.last_24_hours_tokens} + requested {requested_tokens}"
            ),
            current_usage=stats,
            quota=quota,
        )

    return QuotaCheckResult(allowed=True, current_usage=stats, quota=quota)


class QuotaEngine:
    """
    Resolves the caller's identity, reads the usage windows and evaluates
    the model's quota.

    Unknown identities and models without a quota are always allowed.
    """

    def __init__(self, directory: ModelDirectory, counters: UsageCounterStore):
        self.directory = directory
        self.counters = counters

    def check_quota(
        self,
        provider_key: str,
        model_key: Optional[str] = None,
        requested_tokens: int = 0,
    ) -> QuotaCheckResult:
        """
        Args:
            provider_key: Provider name/alias/id, or a ``provider:model`` composite
            model_key: Model name (ignored when provider_key is a composite)
            requested_tokens: Estimated tokens for the pending call

        Returns:
            QuotaCheckResult

        Raises:
            ValueError: If requested_tokens is not a non-negative integer
        """
        validate_requested_tokens(requested_tokens)
        start_time = time.time()

        with trace_span(tracer, "metering.check_quota") as span:
            add_span_attributes(span, {
                "llm.provider_key": provider_key,
                "llm.model_key": model_key,
                "llm.tokens_estimate": requested_tokens,
            })

            identity = self.directory.resolve(provider_key, model_key)
            if identity is None:
                logger.debug(f"No directory entry for {provider_key!r}/{model_key!r}; allowing")
                add_span_attributes(span, {"llm.quota.resolved": False, "llm.quota.allowed": True})
                return QuotaCheckResult(allowed=True)

            usage = self.counters.read_aggregates(identity.provider_id, identity.model_id)
            stats = TokenStats.from_aggregates(usage.value)

            quota = identity.quota
            if quota is None:
                add_span_attributes(span, {"llm.quota.configured": False, "llm.quota.allowed": True})
                record_quota_check(identity.provider_name, identity.model_name, True, usage.degraded)
                return QuotaCheckResult(allowed=True, current_usage=stats, degraded=usage.degraded)

            if usage.degraded:
                # Per-message needs no stored state, so it is still enforced
                result = evaluate_quota(quota, requested_tokens, TokenStats())
                if result.allowed or result.denied_dimension != "per-message":
                    result = QuotaCheckResult(allowed=True, current_usage=stats, quota=quota, degraded=True)
            else:
                result = evaluate_quota(quota, requested_tokens, stats)
                update_minute_usage(identity.provider_name, identity.model_name, stats.current_minute_tokens)

            record_quota_check(identity.provider_name, identity.model_name, result.allowed, result.degraded)
            if not result.allowed:
                record_quota_denied_dimension(result.denied_dimension or "unknown")
                logger.info(f"Quota denied for {identity.provider_name}:{identity.model_name}: {result.reason}")

            latency_ms = (time.time() - start_time) * 1000
            record_check_latency(identity.provider_name, latency_ms)

            add_span_attributes(span, {
                "llm.quota.allowed": result.allowed,
                "llm.quota.degraded": result.degraded,
                "llm.quota.reason": result.reason,
                "llm.quota.minute_tokens": stats.current_minute_tokens,
                "llm.quota.day_tokens": stats.last_24_hours_tokens,
            })

            return result
