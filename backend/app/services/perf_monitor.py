"""Performance monitoring utilities for the BIM estimate pipeline."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("estimate-api.perf")


def timed_async(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for async functions.

    Usage::

        @timed_async
        async def my_async_function():
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
            return result
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "async function timed",
                extra={
                    "timed_function": func.__qualname__,
                    "duration_ms": duration_ms,
                },
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for pipeline-stage metrics.

    Tracks:
    - Per-stage durations (upload, translation_submit, translation_poll,
      extraction, ai_text_completion, ai_vision_analysis)
    - Slowest stage observed
    - Error count broken down by stage
    - Total bytes pushed to object storage
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._stage_durations: Dict[str, list] = {}   # stage -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}       # stage -> count
        self._bytes_uploaded: int = 0
        self._slowest_stage: Optional[str] = None
        self._slowest_stage_ms: float = 0.0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_stage_duration(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self._stage_durations.setdefault(stage, []).append(duration_ms)
            if duration_ms > self._slowest_stage_ms:
                self._slowest_stage_ms = duration_ms
                self._slowest_stage = stage

    def record_stage_error(self, stage: str) -> None:
        with self._lock:
            self._error_counts[stage] = self._error_counts.get(stage, 0) + 1

    def record_bytes_uploaded(self, n_bytes: int) -> None:
        with self._lock:
            self._bytes_uploaded += n_bytes

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            stage_counts           : dict  {stage: calls recorded}
            stage_avg_durations_ms : dict  {stage: avg_ms}
            slowest_stage          : str | None
            slowest_stage_ms       : float
            error_count            : int   (total across all stages)
            error_count_by_stage   : dict  {stage: count}
            bytes_uploaded         : int
        """
        with self._lock:
            stage_avgs: Dict[str, float] = {}
            for stage, durations in self._stage_durations.items():
                stage_avgs[stage] = round(sum(durations) / len(durations), 2) if durations else 0.0

            return {
                "stage_counts": {s: len(d) for s, d in self._stage_durations.items()},
                "stage_avg_durations_ms": stage_avgs,
                "slowest_stage": self._slowest_stage,
                "slowest_stage_ms": round(self._slowest_stage_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_stage": dict(self._error_counts),
                "bytes_uploaded": self._bytes_uploaded,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._stage_durations.clear()
            self._error_counts.clear()
            self._bytes_uploaded = 0
            self._slowest_stage = None
            self._slowest_stage_ms = 0.0


# Module-level singleton, shared by every importer.
tracker = PerformanceTracker()
