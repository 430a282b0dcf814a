"""Performance monitoring utilities for the extraction pipeline."""
import time
import logging
import threading
import functools
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from takeoff.exceptions import ExtractionCancelled

logger = logging.getLogger("takeoff.perf")


def timed(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for synchronous functions.

    Usage::

        @timed
        def read_dxf(path):
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "function timed",
                extra={"function": func.__qualname__, "duration_ms": duration_ms},
            )
    return wrapper


def timed_async(func: Callable) -> Callable:
    """Async counterpart of :func:`timed`."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "async function timed",
                extra={"function": func.__qualname__, "duration_ms": duration_ms},
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for extraction metrics.

    Tracks:
    - Imports completed and cancelled
    - Cumulative and average import duration
    - Entities and records seen
    - Slowest stage across all imports
    - Error count broken down by stage
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._imports_processed: int = 0
        self._imports_cancelled: int = 0
        self._total_duration_ms: float = 0.0
        self._entities_processed: int = 0
        self._records_emitted: int = 0
        self._stage_durations: Dict[str, list] = {}   # stage -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}       # stage -> count
        self._slowest_stage: Optional[str] = None
        self._slowest_stage_ms: float = 0.0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_import_complete(self, duration_ms: float, entity_count: int = 0, record_count: int = 0) -> None:
        """Call once when an import produces its records."""
        with self._lock:
            self._imports_processed += 1
            self._total_duration_ms += duration_ms
            self._entities_processed += entity_count
            self._records_emitted += record_count

    def record_import_cancelled(self) -> None:
        with self._lock:
            self._imports_cancelled += 1

    def record_stage_duration(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self._stage_durations.setdefault(stage, []).append(duration_ms)
            if duration_ms > self._slowest_stage_ms:
                self._slowest_stage_ms = duration_ms
                self._slowest_stage = stage

    def record_stage_error(self, stage: str) -> None:
        with self._lock:
            self._error_counts[stage] = self._error_counts.get(stage, 0) + 1

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            imports_processed      : int
            imports_cancelled      : int
            avg_import_duration_ms : float  (0 if none processed)
            entities_processed     : int
            records_emitted        : int
            slowest_stage          : str | None
            slowest_stage_ms       : float
            error_count            : int   (total across all stages)
            error_count_by_stage   : dict  {stage: count}
            stage_avg_durations_ms : dict  {stage: avg_ms}
        """
        with self._lock:
            avg = (
                round(self._total_duration_ms / self._imports_processed, 2)
                if self._imports_processed > 0
                else 0.0
            )
            stage_avgs: Dict[str, float] = {}
            for stage, durations in self._stage_durations.items():
                stage_avgs[stage] = round(sum(durations) / len(durations), 2) if durations else 0.0

            return {
                "imports_processed": self._imports_processed,
                "imports_cancelled": self._imports_cancelled,
                "avg_import_duration_ms": avg,
                "entities_processed": self._entities_processed,
                "records_emitted": self._records_emitted,
                "slowest_stage": self._slowest_stage,
                "slowest_stage_ms": round(self._slowest_stage_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_stage": dict(self._error_counts),
                "stage_avg_durations_ms": stage_avgs,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._imports_processed = 0
            self._imports_cancelled = 0
            self._total_duration_ms = 0.0
            self._entities_processed = 0
            self._records_emitted = 0
            self._stage_durations.clear()
            self._error_counts.clear()
            self._slowest_stage = None
            self._slowest_stage_ms = 0.0


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()


@contextmanager
def stage_timer(stage: str, import_id: str = "") -> Iterator[None]:
    """Time one pipeline stage into the tracker; errors are counted against the stage."""
    start = time.perf_counter()
    try:
        yield
    except ExtractionCancelled:
        raise
    except Exception:
        tracker.record_stage_error(stage)
        raise
    finally:
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        tracker.record_stage_duration(stage, duration_ms)
        logger.debug(
            f"stage {stage} finished",
            extra={"stage": stage, "import_id": import_id, "duration_ms": duration_ms},
        )
