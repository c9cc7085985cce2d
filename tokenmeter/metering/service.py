"""
Token Stats Service

Single entry point used by the middleware, the LangChain callback and the CLI:
quota checks, usage recording, current stats and usage reports.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from tokenmeter.observability.tracing import get_tracer, trace_span, add_span_attributes
from .config import MeteringConfig, load_metering_config
from .counters import (
    InMemoryUsageCounterBackend,
    RedisUsageCounterBackend,
    UsageCounterStore,
    create_redis_client,
)
from .directory import ModelDirectory, QuotaRecord
from .quota import QuotaCheckResult, QuotaEngine, TokenStats, validate_requested_tokens
from .recorder import DurableUsageRecorder
from .types import TokenUsage
from .metrics import record_usage_recorded, record_usage_skipped

logger = logging.getLogger(__name__)
tracer = get_tracer("metering.service")

UsageInput = Union[TokenUsage, Mapping[str, Any]]


@dataclass(frozen=True)
class UsageReport:
    """Composite view for dashboards: quota, live stats and a zero-token check."""

    quota: Optional[QuotaRecord]
    current_stats: TokenStats
    quota_check_result: QuotaCheckResult

    def as_dict(self) -> Dict[str, Any]:
        return {
            "quota": self.quota.as_dict() if self.quota else None,
            "current_stats": self.current_stats.as_dict(),
            "quota_check_result": self.quota_check_result.as_dict(),
        }


def coerce_usage(usage: UsageInput) -> TokenUsage:
    """Accept a TokenUsage or a mapping with prompt/completion/total token counts."""
    if isinstance(usage, TokenUsage):
        return usage
    if isinstance(usage, Mapping):
        total = usage.get("total_tokens")
        return TokenUsage(
            prompt_tokens=_token_count(usage.get("prompt_tokens") or 0),
            completion_tokens=_token_count(usage.get("completion_tokens") or 0),
            total_tokens=-1 if total is None else _token_count(total),
        )
    raise ValueError(f"Unsupported usage value: {usage!r}")


def _token_count(value: Any) -> Any:
    # JSON decoders hand back 10.0 for 10
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class TokenStatsService:
    """
    Wires the directory, counter store, quota engine and durable recorder.

    ``record_token_usage`` and ``submit_token_usage`` never raise; quota checks
    only raise for invalid token counts.
    """

    def __init__(
        self,
        directory: ModelDirectory,
        counters: UsageCounterStore,
        recorder: Optional[DurableUsageRecorder] = None,
        enabled: bool = True,
        max_workers: int = 4,
    ):
        self.directory = directory
        self.counters = counters
        self.recorder = recorder
        self.enabled = enabled
        self.engine = QuotaEngine(directory, counters)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="usage-recorder")

    def check_quota(self, provider_key: str, model_key: Optional[str], estimated_tokens: int) -> QuotaCheckResult:
        validate_requested_tokens(estimated_tokens)

        if not self.enabled:
            return QuotaCheckResult(allowed=True)

        try:
            return self.engine.check_quota(provider_key, model_key, estimated_tokens)
        except Exception as e:
            # On error, allow the call (fail open)
            logger.error(f"Error checking quota for {provider_key!r}/{model_key!r}: {e}")
            return QuotaCheckResult(allowed=True, degraded=True)

    def record_token_usage(self, provider_key: str, model_key: Optional[str], usage: UsageInput) -> None:
        if not self.enabled:
            return

        try:
            token_usage = coerce_usage(usage)
        except ValueError as e:
            logger.warning(f"Ignoring invalid token usage for {provider_key!r}/{model_key!r}: {e}")
            record_usage_skipped("invalid_usage")
            return

        with trace_span(tracer, "metering.record_usage") as span:
            try:
                identity = self.directory.resolve(provider_key, model_key)
                if identity is None:
                    logger.info(f"Skipping usage for unknown model {provider_key!r}/{model_key!r}")
                    record_usage_skipped("unresolved")
                    return

                add_span_attributes(span, {
                    "llm.provider": identity.provider_name,
                    "llm.model": identity.model_name,
                    "llm.tokens.prompt": token_usage.prompt_tokens,
                    "llm.tokens.completion": token_usage.completion_tokens,
                    "llm.tokens.total": token_usage.total_tokens,
                })

                counted = self.counters.record_usage(identity.provider_id, identity.model_id, token_usage)
                persisted = None
                if self.recorder is not None:
                    persisted = self.recorder.persist(identity.provider_id, identity.model_id, token_usage)

                record_usage_recorded(identity.provider_name, identity.model_name, token_usage.total_tokens)
                add_span_attributes(span, {"llm.usage.counted": counted, "llm.usage.persisted": persisted})
                logger.debug(
                    f"Recorded {token_usage.total_tokens} tokens for {identity.provider_name}:{identity.model_name} "
                    f"(counters={counted}, durable={persisted})"
                )
            except Exception as e:
                logger.error(f"Failed to record token usage for {provider_key!r}/{model_key!r}: {e}")

    def submit_token_usage(self, provider_key: str, model_key: Optional[str], usage: UsageInput) -> Future:
        """Record usage on a worker thread; the returned future resolves to None."""
        return self._executor.submit(self.record_token_usage, provider_key, model_key, usage)

    def get_token_stats(self, provider_key: str, model_key: Optional[str] = None) -> TokenStats:
        try:
            identity = self.directory.resolve(provider_key, model_key)
            if identity is None:
                return TokenStats()
            aggregates = self.counters.read_aggregates(identity.provider_id, identity.model_id)
            return TokenStats.from_aggregates(aggregates.value)
        except Exception as e:
            logger.error(f"Failed to read token stats for {provider_key!r}/{model_key!r}: {e}")
            return TokenStats()

    def get_quota(self, provider_key: str, model_key: Optional[str] = None) -> Optional[QuotaRecord]:
        identity = self.directory.resolve(provider_key, model_key)
        return identity.quota if identity else None

    def get_usage_report(self, provider_key: str, model_key: Optional[str] = None) -> UsageReport:
        return UsageReport(
            quota=self.get_quota(provider_key, model_key),
            current_stats=self.get_token_stats(provider_key, model_key),
            quota_check_result=self.check_quota(provider_key, model_key, 0),
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.directory.stop_auto_refresh(timeout=1.0 if wait else 0)


def build_directory(config: MeteringConfig) -> ModelDirectory:
    if config.directory_source == "yaml":
        from .loaders import YamlDirectoryLoader
        loader = YamlDirectoryLoader(config.directory_seed_file)
    else:
        from .loaders import DatabaseDirectoryLoader
        loader = DatabaseDirectoryLoader()

    directory = ModelDirectory(loader=loader)
    if not directory.refresh():
        logger.warning("Directory could not be loaded; quota checks will allow all calls until it is")
    if config.directory_refresh_seconds > 0:
        directory.start_auto_refresh(config.directory_refresh_seconds)
    return directory


def build_counter_store(config: MeteringConfig) -> UsageCounterStore:
    if config.redis_url:
        logger.info("Using Redis usage counter backend")
        client = create_redis_client(
            config.redis_url,
            socket_timeout=config.redis_socket_timeout,
            connect_timeout=config.redis_connect_timeout,
        )
        backend = RedisUsageCounterBackend(client)
    else:
        logger.info("Using in-memory usage counter backend")
        backend = InMemoryUsageCounterBackend()
    return UsageCounterStore(backend, ttl_grace_seconds=config.ttl_grace_seconds)


def create_token_stats_service(config: Optional[MeteringConfig] = None) -> TokenStatsService:
    config = config or load_metering_config()
    return TokenStatsService(
        directory=build_directory(config),
        counters=build_counter_store(config),
        recorder=DurableUsageRecorder() if config.durable_recording_enabled else None,
        enabled=config.enabled,
        max_workers=config.recorder_workers,
    )


# Global service instance
_service: Optional[TokenStatsService] = None
_service_lock = threading.Lock()


def get_token_stats_service() -> TokenStatsService:
    """
    Get the global token stats service.

    Returns:
        TokenStatsService built from the metering configuration
    """
    global _service

    if _service is None:
        with _service_lock:
            if _service is None:
                _service = create_token_stats_service()

    return _service


def set_token_stats_service(service: Optional[TokenStatsService]) -> None:
    """Install a preconfigured service (tests, embedding applications)."""
    global _service
    with _service_lock:
        _service = service


def reset_token_stats_service() -> None:
    global _service
    with _service_lock:
        if _service is not None:
            _service.shutdown(wait=False)
        _service = None
