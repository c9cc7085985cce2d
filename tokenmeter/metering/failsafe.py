"""
Fail-open boundary for external store calls.

Every call into Redis or the database goes through ``guarded`` so that
infrastructure failures degrade to a neutral value in one place instead of
being handled ad hoc at each call site.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from .metrics import record_store_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of a guarded store call."""

    value: T
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def degraded(self) -> bool:
        return self.error is not None


def guarded(
    operation: str,
    func: Callable[[], T],
    default: T,
    **context: Any,
) -> StoreResult[T]:
    """
    Run ``func`` and convert any exception into ``default``.

    Args:
        operation: Name of the store operation, used in logs and metrics
        func: Zero-argument callable performing the store call
        default: Neutral value returned on failure
        **context: Extra fields (keys, ids) logged with the warning

    Returns:
        StoreResult carrying either the call's value or the default plus the error
    """
    try:
        return StoreResult(func())
    except Exception as e:
        details = ", ".join(f"{k}={v}" for k, v in sorted(context.items()))
        logger.warning(f"Store operation '{operation}' failed ({details}): {e!r}; degrading to neutral result")
        record_store_failure(operation)
        return StoreResult(default, e)
