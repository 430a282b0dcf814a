"""
test_batch_scheduler.py — Unit tests for cooperative batching and progress.

Tests cover:
  - ProgressReporter clamping (0..100, never decreasing)
  - Stage bands and batch boundaries
  - Yielding to other coroutines between batches
  - Cancellation at batch boundaries
"""

import asyncio
import pytest

from takeoff.exceptions import ConfigurationError, ExtractionCancelled
from takeoff.services.batch_scheduler import BatchScheduler, ProgressReporter


class TestProgressReporter:

    def test_never_decreases(self):
        seen = []
        reporter = ProgressReporter(seen.append)
        reporter.report(50)
        reporter.report(30)
        reporter.report(60)
        assert seen == [50, 50, 60]

    def test_clamped_to_range(self):
        reporter = ProgressReporter()
        assert reporter.report(-5) == 0
        assert reporter.report(150) == 100

    def test_stage_band_mapping(self):
        reporter = ProgressReporter()
        assert reporter.report_stage("flatten", 1, 2) == 20
        assert reporter.report_stage("classify", 1, 1) == 70
        assert reporter.report_stage("match", 1, 1) == 99
        assert reporter.finish() == 100

    def test_empty_stage_reports_band_end(self):
        reporter = ProgressReporter()
        assert reporter.report_stage("flatten", 0, 0) == 40


class TestBatchScheduler:

    def test_batches_split(self):
        scheduler = BatchScheduler(batch_size=2)
        assert scheduler.batches(list(range(5))) == [[0, 1], [2, 3], [4]]

    def test_invalid_batch_size(self):
        with pytest.raises(ConfigurationError):
            BatchScheduler(batch_size=0)

    def test_run_stage_processes_everything_in_order(self):
        processed = []
        progress = []
        scheduler = BatchScheduler(batch_size=3, reporter=ProgressReporter(progress.append))
        asyncio.run(scheduler.run_stage("flatten", list(range(10)), processed.extend))
        assert processed == list(range(10))
        assert scheduler.batches_run == 4
        assert progress == sorted(progress)
        assert progress[-1] == 40

    def test_yields_between_batches(self):
        log = []

        async def other():
            log.append("other")

        async def main():
            scheduler = BatchScheduler(batch_size=1)
            task = asyncio.create_task(other())
            await scheduler.run_stage("flatten", ["a", "b"], lambda batch: log.append("batch"))
            await task

        asyncio.run(main())
        assert log[0] == "other"
        assert log.count("batch") == 2

    def test_cancel_before_first_batch(self):
        processed = []

        async def main():
            cancel = asyncio.Event()
            cancel.set()
            scheduler = BatchScheduler(batch_size=2, cancel_event=cancel)
            await scheduler.run_stage("flatten", [1, 2, 3], processed.extend)

        with pytest.raises(ExtractionCancelled) as exc_info:
            asyncio.run(main())
        assert processed == []
        assert exc_info.value.progress_pct == 0

    def test_cancel_mid_stage_stops_at_boundary(self):
        processed = []

        async def main():
            cancel = asyncio.Event()
            scheduler = BatchScheduler(batch_size=2, cancel_event=cancel)

            def process(batch):
                processed.extend(batch)
                cancel.set()

            await scheduler.run_stage("classify", [1, 2, 3, 4, 5], process)

        with pytest.raises(ExtractionCancelled):
            asyncio.run(main())
        # First batch completed whole, nothing after it
        assert processed == [1, 2]


class TestRunStream:

    def test_generator_consumed_in_fixed_batches(self):
        batches = []
        progress = []
        scheduler = BatchScheduler(batch_size=4, reporter=ProgressReporter(progress.append))
        items = (i for i in range(10))
        count = asyncio.run(scheduler.run_stream("flatten", items, lambda b: batches.append(list(b)), expected=10))
        assert count == 10
        assert batches == [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]]
        assert scheduler.batches_run == 3
        assert progress == [16, 32, 40, 40]

    def test_overestimate_still_ends_at_band_end(self):
        progress = []
        scheduler = BatchScheduler(batch_size=2, reporter=ProgressReporter(progress.append))
        asyncio.run(scheduler.run_stream("flatten", iter([1, 2]), lambda b: None, expected=100))
        assert progress == [0, 40]

    def test_items_produced_only_between_checkpoints(self):
        produced = []

        def items():
            for i in range(6):
                produced.append(i)
                yield i

        async def main():
            cancel = asyncio.Event()
            scheduler = BatchScheduler(batch_size=2, cancel_event=cancel)
            await scheduler.run_stream("flatten", items(), lambda b: cancel.set(), expected=6)

        with pytest.raises(ExtractionCancelled):
            asyncio.run(main())
        assert produced == [0, 1]
