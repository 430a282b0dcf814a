"""
Batch Scheduler — cooperative chunking for drawings with hundreds of
thousands of entities.

Work runs in fixed-size batches on the event loop; between batches control is
handed back with ``await asyncio.sleep(0)`` so progress callbacks, SSE writers
and other requests get a turn. Cancellation is only observed at those
boundaries, which means a batch is never half-applied.
"""
import asyncio
import logging
from itertools import islice
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from takeoff.config import DEFAULT_BATCH_SIZE, PROGRESS_BANDS
from takeoff.exceptions import ConfigurationError, ExtractionCancelled

logger = logging.getLogger("takeoff-scheduler")

T = TypeVar("T")

ProgressCallback = Callable[[int], None]


class ProgressReporter:
    """Clamps reported progress to 0..100 and never lets it go backwards."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.value = 0

    def report(self, pct: float) -> int:
        pct = int(max(0, min(100, pct)))
        self.value = max(self.value, pct)
        if self.callback is not None:
            self.callback(self.value)
        return self.value

    def report_stage(self, stage: str, done: int, total: int) -> int:
        """Report position ``done/total`` inside the stage's progress band."""
        lo, hi = PROGRESS_BANDS[stage]
        fraction = 1.0 if total <= 0 else done / total
        return self.report(lo + (hi - lo) * fraction)

    def finish(self) -> int:
        return self.report(100)


class BatchScheduler:
    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be at least 1, got {batch_size}")
        self.batch_size = batch_size
        self.reporter = reporter or ProgressReporter()
        self.cancel_event = cancel_event
        self.batches_run = 0

    def batches(self, items: Sequence[T]) -> list[Sequence[T]]:
        return [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]

    async def checkpoint(self) -> None:
        """Batch boundary: honour cancellation, then yield to the event loop."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.info(f"Extraction cancelled at {self.reporter.value}%")
            raise ExtractionCancelled(self.reporter.value)
        await asyncio.sleep(0)

    async def run_stage(self, stage: str, items: Sequence[T], process: Callable[[Sequence[T]], None]) -> None:
        """
        Feed ``items`` to ``process`` batch by batch, reporting progress within
        ``stage``'s band after each batch. An empty stage still reports its
        band end so progress keeps moving.
        """
        total = len(items)
        if total == 0:
            await self.checkpoint()
            self.reporter.report_stage(stage, 0, 0)
            return
        done = 0
        for batch in self.batches(items):
            await self.checkpoint()
            process(batch)
            done += len(batch)
            self.batches_run += 1
            self.reporter.report_stage(stage, done, total)

    async def run_stream(
        self,
        stage: str,
        items: Iterable[T],
        process: Callable[[Sequence[T]], None],
        expected: int,
    ) -> int:
        """
        Pull ``items`` lazily in fixed-size batches and feed them to ``process``.

        The work of producing each batch happens between two checkpoints, so a
        generator that expands nested data still yields and honours
        cancellation every ``batch_size`` items. ``expected`` is an upper bound
        on the item count and only sizes the progress band; the band end is
        reported once the stream runs dry. Returns the number of items seen.
        """
        iterator = iter(items)
        done = 0
        while True:
            await self.checkpoint()
            batch = list(islice(iterator, self.batch_size))
            if not batch:
                break
            process(batch)
            done += len(batch)
            self.batches_run += 1
            self.reporter.report_stage(stage, min(done, expected), expected)
        self.reporter.report_stage(stage, 0, 0)
        return done
