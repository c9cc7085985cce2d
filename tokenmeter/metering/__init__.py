"""
Token Metering & Quota Enforcement

Meters token usage of AI model calls and enforces per-model quotas:
- Provider/model directory with aliases and composite keys
- Minute/hour/day usage windows (in-memory or Redis)
- Quota checks (per-message, per-minute, per-day) that fail open
- Durable usage history in the database
- Middleware and LangChain callback for model calls
"""

from .config import MeteringConfig, load_metering_config
from .directory import ModelDirectory, ResolvedIdentity, ResourceNotFoundError, parse_model_key
from .types import TokenUsage, UsageAggregate, UsageWindowKey, WindowKind
from .counters import UsageCounterStore
from .quota import QuotaCheckResult, QuotaEngine, TokenStats, evaluate_quota
from .recorder import DurableUsageRecorder
from .service import TokenStatsService, UsageReport, get_token_stats_service, reset_token_stats_service
from .estimation import count_tokens, extract_token_usage
from .middleware import (
    MiddlewareConfig,
    QuotaExceededError,
    TokenStatsMiddleware,
    token_stats_middleware,
    token_stats_with_quota_middleware,
    token_stats_logging_only_middleware,
)
from .callback import TokenStatsCallbackHandler

__all__ = [
    "MeteringConfig",
    "load_metering_config",
    "ModelDirectory",
    "ResolvedIdentity",
    "ResourceNotFoundError",
    "parse_model_key",
    "TokenUsage",
    "UsageAggregate",
    "UsageWindowKey",
    "WindowKind",
    "UsageCounterStore",
    "QuotaCheckResult",
    "QuotaEngine",
    "TokenStats",
    "evaluate_quota",
    "DurableUsageRecorder",
    "TokenStatsService",
    "UsageReport",
    "get_token_stats_service",
    "reset_token_stats_service",
    "count_tokens",
    "extract_token_usage",
    "MiddlewareConfig",
    "QuotaExceededError",
    "TokenStatsMiddleware",
    "token_stats_middleware",
    "token_stats_with_quota_middleware",
    "token_stats_logging_only_middleware",
    "TokenStatsCallbackHandler",
]
