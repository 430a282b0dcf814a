"""
test_extraction_pipeline.py — End-to-end tests for run_extraction / extract_openings.

Tests cover:
  - Records from the sample elevation (labels, kinds, categories, swing, shape)
  - Nested outlines resolve to the innermost loop; duplicate labels dedup
  - Drawing-centred output coordinates, scale factor, nested block chains
  - Determinism, progress monotonicity, cancellation, warnings, parse failures
"""

import asyncio
import pytest

from takeoff.config import ExtractionConfig
from takeoff.exceptions import ExtractionCancelled, UpstreamParseFailure
from takeoff.services.extraction_pipeline import extract_openings, run_extraction
from takeoff.services.perf_monitor import tracker

from conftest import rect, text


def _by_label(result):
    return {r.label: r for r in result.records}


class TestSampleDrawing:

    def test_labels_in_marker_order(self, sample_drawing, default_config):
        result = extract_openings(sample_drawing, default_config)
        assert [r.label for r in result.records] == ["C1515", "C0909", "M0921", "C2020"]

    def test_counts(self, sample_drawing, default_config):
        result = extract_openings(sample_drawing, default_config)
        assert result.wall_count == 1
        assert result.candidate_count == 5
        assert result.total_entity_count == 8
        assert result.warnings == []

    def test_window_record(self, sample_drawing, default_config):
        rec = _by_label(extract_openings(sample_drawing, default_config))["C1515"]
        assert rec.kind == "window"
        assert rec.category == "real"
        assert rec.shape_class == "rectangular"
        assert rec.opening_type == "sliding"
        assert rec.width == pytest.approx(1500)
        assert rec.height == pytest.approx(1500)
        assert rec.area == pytest.approx(2_250_000)
        assert rec.perimeter == pytest.approx(6000)
        assert rec.glass_area == pytest.approx(2_250_000 - 6000 * 50)
        assert rec.frame_weight == pytest.approx(9.0)
        assert rec.source_handle == "R1"
        assert rec.arc_ratio == 0.0
        assert rec.symmetry_rate == pytest.approx(100.0)

    def test_nested_label_picks_inner_loop(self, sample_drawing, default_config):
        rec = _by_label(extract_openings(sample_drawing, default_config))["C0909"]
        assert rec.source_handle == "R3"
        assert rec.area == pytest.approx(1_000_000)
        assert rec.opening_type == "fixed"

    def test_door_with_left_swing(self, sample_drawing, default_config):
        rec = _by_label(extract_openings(sample_drawing, default_config))["M0921"]
        assert rec.kind == "door"
        assert rec.opening_type == "left_hinge"
        assert rec.category == "real"

    def test_reference_window_outside_wall(self, sample_drawing, default_config):
        rec = _by_label(extract_openings(sample_drawing, default_config))["C2020"]
        assert rec.category == "reference"

    def test_points_relative_to_center(self, sample_drawing, default_config):
        result = extract_openings(sample_drawing, default_config)
        assert result.center == pytest.approx((7000, 2500))
        assert result.bounds["width"] == pytest.approx(14000)
        rec = _by_label(result)["C1515"]
        assert rec.points[0] == pytest.approx((-6000, -1500))

    def test_unlabeled_candidates_reported_on_request(self, sample_drawing):
        config = ExtractionConfig(report_unlabeled_candidates=True)
        result = extract_openings(sample_drawing, config)
        assert [c["source_handle"] for c in result.unlabeled_candidates] == ["R2"]
        assert extract_openings(sample_drawing).unlabeled_candidates == []

    def test_summary(self, sample_drawing, default_config):
        summary = extract_openings(sample_drawing, default_config).summary
        assert summary["total_openings"] == 4
        assert summary["by_kind"] == {"window": 3, "door": 1}

    def test_custom_pattern_from_standard(self, sample_drawing):
        config = ExtractionConfig.from_standard("M", "standard", door_pattern=r"ZZZ\d")
        result = extract_openings(sample_drawing, config)
        assert [(r.label, r.kind) for r in result.records] == [("M0921", "window")]

    def test_to_dict_is_plain_data(self, sample_drawing, default_config):
        data = extract_openings(sample_drawing, default_config).to_dict()
        first = data["records"][0]
        assert first["label"] == "C1515"
        assert first["points"][0] == [-6000.0, -1500.0]
        assert data["center"] == [7000.0, 2500.0]


class TestDeterminismAndProgress:

    def test_rerun_is_identical(self, sample_drawing, default_config):
        first = extract_openings(sample_drawing, default_config).to_dict()
        second = extract_openings(sample_drawing, default_config).to_dict()
        assert first == second

    def test_batch_size_does_not_change_records(self, sample_drawing, default_config, small_batch_config):
        a = extract_openings(sample_drawing, default_config).to_dict()["records"]
        b = extract_openings(sample_drawing, small_batch_config).to_dict()["records"]
        assert a == b

    def test_progress_non_decreasing_and_ends_at_100(self, sample_drawing, small_batch_config):
        progress = []
        extract_openings(sample_drawing, small_batch_config, on_progress=progress.append)
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert len(progress) > 10
        assert all(0 <= p <= 100 for p in progress)

    def test_empty_drawing(self):
        progress = []
        result = extract_openings({"entities": []}, on_progress=progress.append)
        assert result.records == []
        assert result.bounds is None
        assert result.center == (0.0, 0.0)
        assert progress[-1] == 100

    def test_single_insert_flatten_reports_every_batch(self):
        """One insert expanding to thousands of entities is still batched."""
        lines = [{"type": "line", "points": [(i, 0), (i, 1)]} for i in range(5000)]
        drawing = {
            "entities": [{"type": "insert", "name": "PLAN", "position": (0, 0)}],
            "blocks": {"PLAN": {"entities": lines}},
        }
        progress = []
        result = extract_openings(drawing, ExtractionConfig(batch_size=1000), on_progress=progress.append)
        assert result.total_entity_count == 5000
        assert [p for p in progress if p < 40] == [8, 16, 24, 32]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    def test_large_grid(self):
        entities = []
        n = 0
        for i in range(20):
            for j in range(15):
                x, y = i * 2000, j * 2000
                entities.append(rect(f"R{n}", x, y, 1000, 1000))
                entities.append(text(f"C{n:04d}", x + 500, y + 500))
                n += 1
        result = extract_openings({"entities": entities}, ExtractionConfig(batch_size=64))
        assert len(result.records) == 300
        assert len({r.label for r in result.records}) == 300
        assert all(r.category == "reference" for r in result.records)


class TestCancellation:

    def test_cancel_before_start(self, sample_drawing):
        async def main():
            cancel = asyncio.Event()
            cancel.set()
            return await run_extraction(sample_drawing, cancel_event=cancel)

        with pytest.raises(ExtractionCancelled):
            asyncio.run(main())

    def test_cancel_mid_run_returns_nothing(self, sample_drawing, small_batch_config):
        tracker.reset()
        progress = []

        async def main():
            cancel = asyncio.Event()

            def on_progress(pct):
                progress.append(pct)
                if pct >= 40:
                    cancel.set()

            return await run_extraction(sample_drawing, small_batch_config, on_progress, cancel)

        with pytest.raises(ExtractionCancelled) as exc_info:
            asyncio.run(main())
        assert 40 <= exc_info.value.progress_pct < 100
        assert 100 not in progress
        assert tracker.get_metrics()["imports_cancelled"] == 1

    def test_cancel_inside_single_insert(self):
        lines = [{"type": "line", "points": [(i, 0), (i, 1)]} for i in range(5000)]
        drawing = {
            "entities": [{"type": "insert", "name": "PLAN", "position": (0, 0)}],
            "blocks": {"PLAN": {"entities": lines}},
        }

        async def main():
            cancel = asyncio.Event()

            def on_progress(pct):
                if 0 < pct < 40:
                    cancel.set()

            return await run_extraction(drawing, ExtractionConfig(batch_size=1000), on_progress, cancel)

        with pytest.raises(ExtractionCancelled) as exc_info:
            asyncio.run(main())
        assert exc_info.value.progress_pct == 8


class TestTransformsAndWarnings:

    def test_scale_factor_metres_to_mm(self):
        drawing = {"entities": [rect("W", 0, 0, 10, 5), rect("R", 1, 1, 1.5, 1.5), text("C1515", 1.7, 1.7)]}
        result = extract_openings(drawing, ExtractionConfig(scale_factor=1000))
        assert len(result.records) == 1
        rec = result.records[0]
        assert rec.width == pytest.approx(1500)
        assert rec.area == pytest.approx(2_250_000)
        assert rec.category == "real"

    def test_nested_block_chain(self, nested_block_drawing):
        result = extract_openings(nested_block_drawing)
        assert [r.label for r in result.records] == ["C1010", "C1010"]
        assert result.center == pytest.approx((6500, 5500))
        assert result.records[0].points[0] == pytest.approx((-1500, -500))
        assert result.records[1].points[0] == pytest.approx((500, -500))

    def test_missing_block_warning(self, sample_drawing):
        sample_drawing["entities"].append({"type": "insert", "name": "GHOST", "position": (0, 0)})
        result = extract_openings(sample_drawing)
        assert any("GHOST" in w for w in result.warnings)
        assert len(result.records) == 4

    def test_depth_truncation_warning(self):
        drawing = {
            "entities": [{"type": "insert", "name": "LOOP", "position": (0, 0)}],
            "blocks": {"LOOP": {"entities": [
                {"type": "line", "points": [(0, 0), (1, 0)]},
                {"type": "insert", "name": "LOOP", "position": (1, 0)},
            ]}},
        }
        result = extract_openings(drawing, ExtractionConfig(max_block_depth=2))
        assert result.total_entity_count == 2
        assert any("deeper than 2" in w for w in result.warnings)


class TestUpstreamFailures:

    @pytest.mark.parametrize("bad", [
        None,
        [],
        {"layers": {}},
        {"entities": [{"type": "line", "points": [(0, 0)]}]},
        {"entities": [{"type": "spline"}]},
        {"entities": [{"type": "circle", "center": (0, 0)}]},
    ])
    def test_malformed_drawing_raises(self, bad):
        with pytest.raises(UpstreamParseFailure):
            extract_openings(bad)

    def test_tracker_counts_completed_imports(self, sample_drawing):
        tracker.reset()
        extract_openings(sample_drawing)
        metrics = tracker.get_metrics()
        assert metrics["imports_processed"] == 1
        assert metrics["records_emitted"] == 4
        assert set(metrics["stage_avg_durations_ms"]) == {"flatten", "classify", "match"}
