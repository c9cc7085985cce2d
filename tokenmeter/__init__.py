"""Token usage metering and per-model quota enforcement for AI model calls."""

__version__ = "0.1.0"
