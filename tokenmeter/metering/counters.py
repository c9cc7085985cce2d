"""
Usage Counter Store

Fixed-TTL usage windows (minute/hour/day) per model, with pluggable backends:
- In-memory backend (default): per-process counters, for tests and single workers
- Redis backend: shared counters, one atomic Lua round trip per usage event

A window's TTL is set once, when its key is created, and is never refreshed by
later increments. The window therefore resets when the key expires, not
continuously.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence

from .failsafe import StoreResult, guarded
from .types import TokenUsage, UsageAggregate, UsageWindowKey, WindowKind

logger = logging.getLogger(__name__)

AGGREGATE_FIELDS = ("total_tokens", "request_count", "prompt_tokens", "completion_tokens")


class UsageCounterBackend(ABC):
    """Abstract base class for usage counter backends."""

    @abstractmethod
    def increment(self, keys: Sequence[UsageWindowKey], usage: TokenUsage, ttls: Mapping[UsageWindowKey, int]) -> None:
        """
        Atomically add one usage event to every key.

        Args:
            keys: Window keys to update
            usage: Token counts to add (request_count is incremented by one)
            ttls: Expiry in seconds applied to keys created by this call
        """
        pass

    @abstractmethod
    def fetch(self, keys: Sequence[UsageWindowKey]) -> Dict[UsageWindowKey, UsageAggregate]:
        """
        Read current aggregates. Missing or expired keys are omitted.
        """
        pass

    @abstractmethod
    def ttl(self, key: UsageWindowKey) -> Optional[float]:
        """Remaining lifetime of a key in seconds, None when the key does not exist."""
        pass


class InMemoryUsageCounterBackend(UsageCounterBackend):
    """In-memory counters with absolute expiry (per-process)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            clock: Monotonic time source in seconds; injectable for tests
        """
        self.clock = clock
        self.entries: Dict[str, Dict[str, float]] = {}
        self.lock = threading.Lock()

    def _live_entry(self, redis_key: str, now: float) -> Optional[Dict[str, float]]:
        entry = self.entries.get(redis_key)
        if entry is not None and entry["expires_at"] <= now:
            del self.entries[redis_key]
            return None
        return entry

    def increment(self, keys, usage, ttls) -> None:
        with self.lock:
            now = self.clock()
            for key in keys:
                entry = self._live_entry(key.redis_key, now)
                if entry is None:
                    entry = {name: 0 for name in AGGREGATE_FIELDS}
                    entry["expires_at"] = now + ttls[key]
                    self.entries[key.redis_key] = entry

                entry["total_tokens"] += usage.total_tokens
                entry["prompt_tokens"] += usage.prompt_tokens
                entry["completion_tokens"] += usage.completion_tokens
                entry["request_count"] += 1

    def fetch(self, keys) -> Dict[UsageWindowKey, UsageAggregate]:
        result = {}
        with self.lock:
            now = self.clock()
            for key in keys:
                entry = self._live_entry(key.redis_key, now)
                if entry is not None:
                    result[key] = UsageAggregate(**{name: int(entry[name]) for name in AGGREGATE_FIELDS})
        return result

    def ttl(self, key: UsageWindowKey) -> Optional[float]:
        with self.lock:
            now = self.clock()
            entry = self._live_entry(key.redis_key, now)
            return None if entry is None else entry["expires_at"] - now

    def clear(self) -> None:
        with self.lock:
            self.entries.clear()


class RedisUsageCounterBackend(UsageCounterBackend):
    """Redis-backed usage counters (multi-process)."""

    # KEYS: window keys. ARGV: total, prompt, completion, then one TTL per key.
    # The expiry is applied only to keys without one (new keys), so increments
    # never extend a window.
    INCREMENT_SCRIPT = """
    local total = tonumber(ARGV[1])
    local prompt = tonumber(ARGV[2])
    local completion = tonumber(ARGV[3])
    local created = 0

    for i, key in ipairs(KEYS) do
        local ttl = redis.call('TTL', key)
        redis.call('HINCRBY', key, 'total_tokens', total)
        redis.call('HINCRBY', key, 'prompt_tokens', prompt)
        redis.call('HINCRBY', key, 'completion_tokens', completion)
        redis.call('HINCRBY', key, 'request_count', 1)
        if ttl < 0 then
            redis.call('EXPIRE', key, tonumber(ARGV[3 + i]))
            created = created + 1
        end
    end

    return created
    """

    def __init__(self, client):
        """
        Args:
            client: redis.Redis client (see ``create_redis_client``)
        """
        self.client = client
        self._increment = client.register_script(self.INCREMENT_SCRIPT)

    def increment(self, keys, usage, ttls) -> None:
        args = [usage.total_tokens, usage.prompt_tokens, usage.completion_tokens]
        args.extend(ttls[key] for key in keys)
        self._increment(keys=[key.redis_key for key in keys], args=args)

    def fetch(self, keys) -> Dict[UsageWindowKey, UsageAggregate]:
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.hgetall(key.redis_key)
        rows = pipe.execute()

        result = {}
        for key, row in zip(keys, rows):
            if row:
                result[key] = _aggregate_from_hash(row)
        return result

    def ttl(self, key: UsageWindowKey) -> Optional[float]:
        remaining = self.client.ttl(key.redis_key)
        if remaining is None or remaining == -2:
            return None
        return float(remaining)


def _aggregate_from_hash(row: Mapping) -> UsageAggregate:
    values = {}
    for raw_name, raw_value in row.items():
        name = raw_name.decode() if isinstance(raw_name, bytes) else raw_name
        if name in AGGREGATE_FIELDS:
            values[name] = int(raw_value)
    return UsageAggregate(**values)


def create_redis_client(redis_url: str, socket_timeout: float = 0.5, connect_timeout: float = 0.5):
    """Build a Redis client whose calls are bounded by the configured timeouts."""
    import redis

    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=connect_timeout,
    )
    logger.info(f"Redis usage counter client created: {redis_url}")
    return client


class UsageCounterStore:
    """
    Fail-open facade over a counter backend.

    Writes return False and reads return zero aggregates when the backend
    fails; nothing here raises to the caller.
    """

    def __init__(self, backend: UsageCounterBackend, ttl_grace_seconds: int = 5):
        if ttl_grace_seconds < 0:
            raise ValueError("ttl_grace_seconds must be non-negative")
        self.backend = backend
        self.ttl_grace_seconds = ttl_grace_seconds

    def ttl_for(self, window: WindowKind) -> int:
        return window.seconds + self.ttl_grace_seconds

    def record_usage(self, provider_id: str, model_id: str, usage: TokenUsage) -> bool:
        """Add one usage event to the minute, hour and day windows of a model."""
        keys = UsageWindowKey.for_model(provider_id, model_id)
        ttls = {key: self.ttl_for(key.window) for key in keys}

        result = guarded(
            "counters.record_usage",
            lambda: self.backend.increment(keys, usage, ttls),
            None,
            key=keys[0].redis_key,
        )
        if result.ok:
            logger.debug(f"Recorded {usage.total_tokens} tokens for {provider_id}:{model_id}")
        return result.ok

    def read_aggregates(
        self,
        provider_id: str,
        model_id: str,
        windows: Optional[Iterable[WindowKind]] = None,
    ) -> StoreResult[Dict[WindowKind, UsageAggregate]]:
        """Read the requested windows; every requested window is present in the value."""
        wanted = tuple(windows) if windows is not None else tuple(WindowKind)
        keys = [UsageWindowKey(provider_id, model_id, window) for window in wanted]
        zero = {window: UsageAggregate() for window in wanted}

        def _fetch():
            found = self.backend.fetch(keys)
            return {key.window: found.get(key, UsageAggregate()) for key in keys}

        return guarded(
            "counters.read_aggregates",
            _fetch,
            zero,
            key=keys[0].redis_key if keys else f"{provider_id}:{model_id}",
        )

    def get_aggregates(self, provider_id: str, model_id: str) -> Dict[WindowKind, UsageAggregate]:
        return self.read_aggregates(provider_id, model_id).value

    def get_aggregate(self, key: UsageWindowKey) -> UsageAggregate:
        """Aggregate for one window; missing keys and store errors yield the zero aggregate."""
        return self.read_aggregates(key.provider_id, key.model_id, (key.window,)).value[key.window]

    def get_ttl(self, key: UsageWindowKey) -> Optional[float]:
        return guarded("counters.get_ttl", lambda: self.backend.ttl(key), None, key=key.redis_key).value
