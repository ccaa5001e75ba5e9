"""
Timing helpers for REST calls and event handlers.

Slow operations are logged at WARNING once they cross HOMELY_PERF_THRESHOLD_MS.
Can be disabled via the HOMELY_PERF_TRACKING environment variable.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable, Coroutine
from typing import Any, ParamSpec, TypeVar

__all__ = [
    "log_timing",
    "measure_time",
    "timed_async",
]

P = ParamSpec("P")
T = TypeVar("T")


def measure_time(start_time: float) -> float:
    """
    Calculate elapsed time in milliseconds.

    Args:
        start_time: Start time from time.perf_counter()

    Returns:
        Elapsed time in milliseconds
    """
    return (time.perf_counter() - start_time) * 1000


def timed_async(operation_name: str | None = None) -> Callable:
    """
    Decorator for timing async functions with threshold warnings.

    Example:
        @timed_async("get_home")
        async def get_home(self, location_id):
            ...
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            from homely2mqtt.const import HOMELY_PERF_TRACKING  # noqa: PLC0415

            if not HOMELY_PERF_TRACKING:
                return await func(*args, **kwargs)

            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                log_timing(operation_name or func.__name__, measure_time(start_time))

        return wrapper

    return decorator


def log_timing(operation_name: str, elapsed_ms: float, threshold_ms: int | None = None) -> None:
    """
    Log timing information with a level based on the threshold.

    Args:
        operation_name: Name of the operation
        elapsed_ms: Elapsed time in milliseconds
        threshold_ms: Warning threshold in milliseconds (defaults to HOMELY_PERF_THRESHOLD_MS)
    """
    from homely2mqtt.const import HOMELY_PERF_THRESHOLD_MS  # noqa: PLC0415
    from homely2mqtt.logging_abstraction import get_logger  # noqa: PLC0415

    logger = get_logger(__name__)
    if threshold_ms is None:
        threshold_ms = HOMELY_PERF_THRESHOLD_MS
    context = {
        "operation": operation_name,
        "duration_ms": round(elapsed_ms, 2),
        "threshold_ms": threshold_ms,
        "exceeded_threshold": elapsed_ms > threshold_ms,
    }
    if elapsed_ms > threshold_ms:
        logger.warning(
            "[%s] completed in %.1fms (threshold: %dms)",
            operation_name,
            elapsed_ms,
            threshold_ms,
            extra=context,
        )
    else:
        logger.debug("[%s] completed in %.1fms", operation_name, elapsed_ms, extra=context)
