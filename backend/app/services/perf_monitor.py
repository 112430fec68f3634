"""Performance monitoring utilities for the pricing engine."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("roofing-api.perf")


def timed_operation(operation: str) -> Callable:
    """
    Decorator for async service operations: logs the duration, records it on
    the module tracker and counts failures.

    Usage::

        @timed_operation("compute_pricing")
        async def compute_pricing(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                tracker.record_error(operation)
                raise
            finally:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                logger.debug(
                    "operation timed",
                    extra={"operation": operation, "duration_ms": duration_ms},
                )
            tracker.record_duration(operation, duration_ms)
            return result
        return wrapper
    return decorator


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for pricing operations.

    Tracks:
    - Call count and average duration per operation
    - Slowest operation call seen
    - Error count broken down by operation
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._durations: Dict[str, list] = {}   # operation -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}  # operation -> count
        self._slowest_operation: Optional[str] = None
        self._slowest_ms: float = 0.0

    def record_duration(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self._durations.setdefault(operation, []).append(duration_ms)
            if duration_ms > self._slowest_ms:
                self._slowest_ms = duration_ms
                self._slowest_operation = operation

    def record_error(self, operation: str) -> None:
        with self._lock:
            self._error_counts[operation] = self._error_counts.get(operation, 0) + 1

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            calls_by_operation        : dict  {operation: count}
            avg_duration_ms           : dict  {operation: avg_ms}
            slowest_operation         : str | None
            slowest_operation_ms      : float
            error_count               : int   (total across all operations)
            error_count_by_operation  : dict  {operation: count}
        """
        with self._lock:
            averages: Dict[str, float] = {}
            for operation, durations in self._durations.items():
                averages[operation] = round(sum(durations) / len(durations), 2) if durations else 0.0

            return {
                "calls_by_operation": {op: len(d) for op, d in self._durations.items()},
                "avg_duration_ms": averages,
                "slowest_operation": self._slowest_operation,
                "slowest_operation_ms": round(self._slowest_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_operation": dict(self._error_counts),
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._durations.clear()
            self._error_counts.clear()
            self._slowest_operation = None
            self._slowest_ms = 0.0


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()
