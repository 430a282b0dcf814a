"""
Extraction Pipeline — parsed drawing in, opening records out.

Stages (progress band):
  1. flatten   (0-40)   nested block instances → world-space entities + labels
  2. classify  (40-70)  centre on the drawing, measure closed loops, bucket them
  3. match     (70-99)  label → innermost loop, features, material estimate
  4. done      (100)

The run is all-or-nothing: records are assembled in locals and only returned
after the last batch, so a cancelled or failed import leaves nothing behind.
"""
import time
import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from takeoff.config import ExtractionConfig
from takeoff.exceptions import ExtractionCancelled
from takeoff.models.drawing import ParsedDrawing, Point
from takeoff.services.anchor_matcher import AnchorMatch, AnchorMatcher
from takeoff.services.batch_scheduler import BatchScheduler, ProgressCallback, ProgressReporter
from takeoff.services.estimator import estimate, summarize
from takeoff.services.feature_analyzer import FeatureAnalyzer
from takeoff.services.geometry_extractor import compute_bounds, drawing_center
from takeoff.services.loop_classifier import LoopClassifier
from takeoff.services.perf_monitor import stage_timer, timed_async, tracker
from takeoff.services.transform_flattener import FlatEntity, TextMarker, Transform, TransformFlattener

logger = logging.getLogger("takeoff-pipeline")


@dataclass
class OpeningRecord:
    label: str
    kind: str                      # window | door
    category: str                  # real | reference
    shape_class: str               # rectangular | polygonal | arched | curved
    opening_type: str              # fixed | sliding | left_hinge | right_hinge | double
    width: float                   # mm
    height: float                  # mm
    area: float                    # mm²
    perimeter: float               # mm
    glass_area: float              # mm²
    frame_weight: float            # kg
    points: list = field(default_factory=list)   # relative to drawing center
    source_handle: str = ""
    layer: str = ""
    arc_ratio: float = 0.0
    symmetry_rate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "kind": self.kind,
            "category": self.category,
            "shape_class": self.shape_class,
            "opening_type": self.opening_type,
            "width": round(self.width, 2),
            "height": round(self.height, 2),
            "area": round(self.area, 2),
            "perimeter": round(self.perimeter, 2),
            "glass_area": round(self.glass_area, 2),
            "frame_weight": round(self.frame_weight, 3),
            "points": [[round(x, 3), round(y, 3)] for x, y in self.points],
            "source_handle": self.source_handle,
            "layer": self.layer,
            "arc_ratio": round(self.arc_ratio, 2),
            "symmetry_rate": round(self.symmetry_rate, 2),
        }


@dataclass
class ExtractionResult:
    records: list[OpeningRecord] = field(default_factory=list)
    bounds: Optional[dict] = None
    center: Point = (0.0, 0.0)
    total_entity_count: int = 0
    wall_count: int = 0
    candidate_count: int = 0
    warnings: list[str] = field(default_factory=list)
    unlabeled_candidates: list[dict] = field(default_factory=list)
    summary: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "records": [r.to_dict() for r in self.records],
            "bounds": self.bounds,
            "center": [round(self.center[0], 3), round(self.center[1], 3)],
            "total_entity_count": self.total_entity_count,
            "wall_count": self.wall_count,
            "candidate_count": self.candidate_count,
            "warnings": list(self.warnings),
            "unlabeled_candidates": list(self.unlabeled_candidates),
            "summary": dict(self.summary),
        }


def build_record(match: AnchorMatch, analyzer: FeatureAnalyzer, config: ExtractionConfig) -> OpeningRecord:
    loop = match.loop
    features = analyzer.analyze(loop)
    material = estimate(
        loop.area,
        loop.perimeter,
        profile_frame_width=config.profile_frame_width,
        unit_weight_per_length=config.unit_weight_per_length,
        length_unit=config.length_unit,
    )
    return OpeningRecord(
        label=match.label,
        kind=match.kind,
        category=features.category,
        shape_class=features.shape_class,
        opening_type=features.opening_type,
        width=loop.width,
        height=loop.height,
        area=loop.area,
        perimeter=loop.perimeter,
        glass_area=material.glass_area,
        frame_weight=material.frame_weight,
        points=[(x, y) for x, y in loop.points],
        source_handle=loop.source_handle,
        layer=loop.layer,
        arc_ratio=features.arc_ratio,
        symmetry_rate=features.symmetry_rate,
    )


@timed_async
async def run_extraction(
    drawing: Any,
    config: Optional[ExtractionConfig] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ExtractionResult:
    """
    Extract opening records from a parsed drawing.

    Args:
        drawing: ParsedDrawing or a plain mapping from the upstream parser.
        config: extraction settings (defaults when omitted).
        on_progress: called with a non-decreasing int 0..100 after every batch.
        cancel_event: checked at batch boundaries; once set the run raises
            ExtractionCancelled and returns nothing.

    Raises:
        UpstreamParseFailure: malformed drawing.
        ExtractionCancelled: cancel token observed.
    """
    config = config or ExtractionConfig()
    import_id = uuid.uuid4().hex[:12]
    start = time.perf_counter()

    drawing = ParsedDrawing.load(drawing)
    reporter = ProgressReporter(on_progress)
    scheduler = BatchScheduler(config.batch_size, reporter, cancel_event)
    logger.info(
        f"Extraction started: {len(drawing.entities)} top-level entities, {len(drawing.blocks)} blocks",
        extra={"import_id": import_id, "entity_count": len(drawing.entities)},
    )

    try:
        # ── Stage 1: flatten ─────────────────────────────────────────────────
        flattener = TransformFlattener(
            drawing.blocks,
            drawing.layers,
            max_depth=config.max_block_depth,
            circle_segments=config.circle_segments,
            arc_segments=config.arc_segments,
        )
        root = Transform.scaled(config.scale_factor)
        flat: list[FlatEntity] = []
        markers: list[TextMarker] = []

        def flatten_batch(batch):
            for item in batch:
                if isinstance(item, TextMarker):
                    markers.append(item)
                else:
                    flat.append(item)

        # Batches are cut from the expanded stream, so one huge insert still
        # yields and reports every batch_size items
        with stage_timer("flatten", import_id):
            await scheduler.run_stream(
                "flatten",
                flattener.walk(drawing.entities, root),
                flatten_batch,
                expected=flattener.estimate_count(drawing.entities),
            )

        # ── Stage 2: centre + classify loops ─────────────────────────────────
        bounds = compute_bounds(flat)
        center = drawing_center(bounds)
        dx, dy = -center[0], -center[1]
        classifier = LoopClassifier(
            wall_area_threshold=config.wall_area_threshold,
            noise_floor=config.noise_floor,
            max_aspect_ratio=config.max_aspect_ratio,
            closure_epsilon=config.closure_epsilon,
        )
        centered: list[FlatEntity] = []

        def classify_batch(batch):
            for entity in batch:
                moved = entity.translated(dx, dy)
                centered.append(moved)
                classifier.add(moved)

        with stage_timer("classify", import_id):
            await scheduler.run_stage("classify", flat, classify_batch)

        # ── Stage 3: anchor matching + features + estimate ───────────────────
        matcher = AnchorMatcher(classifier.candidates, config)
        analyzer = FeatureAnalyzer(classifier.walls, centered, config.sliding_area_threshold)
        records: list[OpeningRecord] = []

        def match_batch(batch):
            for marker in batch:
                found = matcher.match(marker.translated(dx, dy))
                if found is not None:
                    records.append(build_record(found, analyzer, config))

        with stage_timer("match", import_id):
            await scheduler.run_stage("match", markers, match_batch)
    except ExtractionCancelled:
        tracker.record_import_cancelled()
        raise

    warnings: list[str] = []
    if flattener.stats.truncated_branches:
        warnings.append(
            f"{flattener.stats.truncated_branches} nested block instance(s) deeper than "
            f"{config.max_block_depth} levels were skipped"
        )
    if flattener.stats.missing_blocks:
        names = ", ".join(sorted(flattener.stats.missing_blocks))
        warnings.append(f"Inserts reference undefined block(s): {names}")
    for w in warnings:
        logger.warning(w, extra={"import_id": import_id})

    result = ExtractionResult(
        records=records,
        bounds=bounds.to_dict() if bounds else None,
        center=center,
        total_entity_count=len(flat),
        wall_count=len(classifier.walls),
        candidate_count=len(classifier.candidates),
        warnings=warnings,
        unlabeled_candidates=(
            [loop.summary() for loop in matcher.unlabeled()] if config.report_unlabeled_candidates else []
        ),
        summary=summarize(records).to_dict(),
    )
    reporter.finish()

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    tracker.record_import_complete(duration_ms, entity_count=len(flat), record_count=len(records))
    logger.info(
        f"Extraction complete: {len(records)} openings from {len(flat)} entities "
        f"({len(classifier.walls)} walls, {len(classifier.candidates)} candidates, "
        f"{matcher.unmatched_labels} unmatched labels, {matcher.duplicate_labels} duplicates)",
        extra={
            "import_id": import_id,
            "duration_ms": duration_ms,
            "entity_count": len(flat),
            "record_count": len(records),
        },
    )
    return result


def extract_openings(
    drawing: Any,
    config: Optional[ExtractionConfig] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ExtractionResult:
    """Synchronous wrapper for callers without an event loop."""
    return asyncio.run(run_extraction(drawing, config, on_progress))
