"""
Metrics Collection for Token Metering

Tracks counters, gauges and histograms for quota decisions, recorded usage
and store degradation. In-memory implementation with thread-safe updates.
"""

import logging
import threading
from typing import Dict, Any, List, Optional
from collections import defaultdict
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Thread-safe metrics collector for the metering engine.

    Tracks:
    - Quota checks and denials by provider/model and dimension
    - Fail-open (degraded) decisions
    - Tokens and requests recorded
    - Store failures by operation
    - Quota check latency
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.counters = defaultdict(int)
        self.gauges = {}
        self.histograms = defaultdict(list)
        self.start_time = datetime.now(timezone.utc)

    def increment_counter(self, name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        key = self._make_key(name, labels)

        with self.lock:
            self.counters[key] += value

    def set_gauge(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 0):
        key = self._make_key(name, labels)

        with self.lock:
            self.gauges[key] = value

    def observe_histogram(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 0):
        key = self._make_key(name, labels)

        with self.lock:
            self.histograms[key].append(value)

            # Keep only last 1000 observations to prevent memory bloat
            if len(self.histograms[key]) > 1000:
                self.histograms[key] = self.histograms[key][-1000:]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._make_key(name, labels)

        with self.lock:
            return self.counters.get(key, 0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        key = self._make_key(name, labels)

        with self.lock:
            return self.gauges.get(key)

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get histogram statistics (min, max, avg, p50, p95, p99)."""
        key = self._make_key(name, labels)

        with self.lock:
            return self._summarize(list(self.histograms.get(key, [])))

    def get_all_metrics(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histograms": {
                    key: self._summarize(list(values))
                    for key, values in self.histograms.items()
                },
                "metadata": {
                    "start_time": self.start_time.isoformat(),
                    "uptime_seconds": (datetime.now(timezone.utc) - self.start_time).total_seconds(),
                },
            }

    def reset_metrics(self):
        """Reset all metrics (useful for testing)."""
        with self.lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
            self.start_time = datetime.now(timezone.utc)

    @staticmethod
    def _summarize(values: List[float]) -> Dict[str, float]:
        if not values:
            return {}

        sorted_values = sorted(values)
        count = len(sorted_values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / count,
            "p50": sorted_values[int(count * 0.5)],
            "p95": sorted_values[int(count * 0.95)],
            "p99": sorted_values[int(count * 0.99)],
        }

    @staticmethod
    def _make_key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create a unique key from metric name and labels."""
        if not labels:
            return name

        # Sort labels for consistent keys
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}:{label_str}"


# Global metrics collector
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()

    return _metrics_collector


# Convenience functions for common metrics

def record_quota_check(provider: str, model: str, allowed: bool, degraded: bool = False):
    """Record the outcome of a quota check."""
    collector = get_metrics_collector()
    labels = {"provider": provider, "model": model}

    collector.increment_counter("quota_checks_total", labels)
    if not allowed:
        collector.increment_counter("quota_denied_total", labels)
    if degraded:
        collector.increment_counter("quota_checks_degraded_total", labels)


def record_quota_denied_dimension(dimension: str):
    """Record which limit dimension caused a denial."""
    collector = get_metrics_collector()
    collector.increment_counter("quota_denied_by_dimension_total", {"dimension": dimension})


def record_usage_recorded(provider: str, model: str, total_tokens: int):
    """Record that a usage event was accepted for metering."""
    collector = get_metrics_collector()
    labels = {"provider": provider, "model": model}

    collector.increment_counter("usage_events_total", labels)
    collector.increment_counter("usage_tokens_total", labels, total_tokens)


def record_usage_skipped(reason: str):
    """Record a usage event that was dropped (unresolved identity, no usage info...)."""
    collector = get_metrics_collector()
    collector.increment_counter("usage_events_skipped_total", {"reason": reason})


def record_store_failure(operation: str):
    """Record a store call that degraded to a neutral result."""
    collector = get_metrics_collector()
    collector.increment_counter("store_failures_total", {"operation": operation})


def update_minute_usage(provider: str, model: str, tokens: int):
    """Update the current-minute token usage gauge."""
    collector = get_metrics_collector()
    collector.set_gauge("minute_window_tokens", {"provider": provider, "model": model}, tokens)


def record_check_latency(provider: str, latency_ms: float):
    """Record quota check latency."""
    collector = get_metrics_collector()
    collector.observe_histogram("quota_check_latency_ms", {"provider": provider}, latency_ms)


def get_metrics_summary() -> Dict[str, Any]:
    """Get a summary of all metrics."""
    collector = get_metrics_collector()
    return collector.get_all_metrics()
