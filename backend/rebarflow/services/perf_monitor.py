"""Performance monitoring for pipeline operations."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("rebarflow-api.perf")


def track_stage(stage: str) -> Callable:
    """
    Decorator for async pipeline operations: records duration and, when the
    operation raises, an error against `stage`.

    Usage::

        @track_stage("validate")
        async def validate(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            except Exception:
                tracker.record_stage_error(stage)
                raise
            finally:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                tracker.record_stage_duration(stage, duration_ms)
                logger.debug(
                    "pipeline stage timed",
                    extra={"stage": stage, "duration_ms": duration_ms},
                )
        return wrapper
    return decorator


class PipelineTracker:
    """
    Thread-safe in-memory tracker for pipeline-level metrics.

    Tracks:
    - Duration samples per pipeline stage (apply_mapping, validate, approve, …)
    - Slowest stage seen
    - Error count broken down by stage
    - Dispatch outcomes (dispatched vs left pending, by reason)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._stage_durations: Dict[str, list] = {}
        self._error_counts: Dict[str, int] = {}
        self._slowest_stage: Optional[str] = None
        self._slowest_stage_ms: float = 0.0
        self._dispatched: int = 0
        self._undispatched: Dict[str, int] = {}

    def record_stage_duration(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self._stage_durations.setdefault(stage, []).append(duration_ms)
            if duration_ms > self._slowest_stage_ms:
                self._slowest_stage_ms = duration_ms
                self._slowest_stage = stage

    def record_stage_error(self, stage: str) -> None:
        with self._lock:
            self._error_counts[stage] = self._error_counts.get(stage, 0) + 1

    def record_dispatch(self, dispatched: bool, reason: Optional[str] = None) -> None:
        with self._lock:
            if dispatched:
                self._dispatched += 1
            else:
                key = reason or "unknown"
                self._undispatched[key] = self._undispatched.get(key, 0) + 1

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            stage_avgs = {
                stage: round(sum(d) / len(d), 2) if d else 0.0
                for stage, d in self._stage_durations.items()
            }
            return {
                "stage_runs": {stage: len(d) for stage, d in self._stage_durations.items()},
                "stage_avg_durations_ms": stage_avgs,
                "slowest_stage": self._slowest_stage,
                "slowest_stage_ms": round(self._slowest_stage_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_stage": dict(self._error_counts),
                "tasks_dispatched": self._dispatched,
                "tasks_undispatched_by_reason": dict(self._undispatched),
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._stage_durations.clear()
            self._error_counts.clear()
            self._slowest_stage = None
            self._slowest_stage_ms = 0.0
            self._dispatched = 0
            self._undispatched.clear()


# Module-level singleton: import this instance everywhere else.
tracker = PipelineTracker()
