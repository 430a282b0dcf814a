"""
Feature Analyzer — shape, swing and context classification of a matched loop.

Curves arrive as tessellated polylines, so arcs are recognised from the
turning angle between consecutive edges: tessellated arcs turn by a small
steady amount per vertex while rectangle corners turn by ~90°.
"""
import math
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from shapely.geometry import box
from shapely.strtree import STRtree

from takeoff.config import (
    ARC_TURN_MAX_RAD,
    ARC_TURN_MIN_RAD,
    EXTRACTION_DEFAULTS,
    INDICATOR_STYLES,
    SHAPE_RULES,
    SYMMETRY_TOLERANCE,
)
from takeoff.models.drawing import Point
from takeoff.services.anchor_matcher import LoopIndex
from takeoff.services.loop_classifier import Loop, LoopBounds, calculate_bounding_box, calculate_perimeter
from takeoff.services.transform_flattener import FlatEntity

logger = logging.getLogger("takeoff-feature-analyzer")

SHAPE_RECTANGULAR = "rectangular"
SHAPE_POLYGONAL = "polygonal"
SHAPE_ARCHED = "arched"
SHAPE_CURVED = "curved"

OPENING_FIXED = "fixed"
OPENING_SLIDING = "sliding"
OPENING_LEFT_HINGE = "left_hinge"
OPENING_RIGHT_HINGE = "right_hinge"
OPENING_DOUBLE = "double"

CATEGORY_REAL = "real"
CATEGORY_REFERENCE = "reference"

_AXIS_TOLERANCE = 1e-6


def arc_ratio(points: Sequence[Point]) -> float:
    """Percentage of the perimeter made of arc-sampled edges (0 for degenerate input)."""
    n = len(points)
    if n < 3:
        return 0.0
    total_len = 0.0
    arc_len = 0.0
    for i in range(n):
        x1, y1 = points[i]
        x2, y2 = points[(i + 1) % n]
        x3, y3 = points[(i + 2) % n]
        d = math.hypot(x2 - x1, y2 - y1)
        total_len += d
        v1x, v1y = x2 - x1, y2 - y1
        v2x, v2y = x3 - x2, y3 - y2
        angle = abs(math.atan2(v1x * v2y - v1y * v2x, v1x * v2x + v1y * v2y))
        if ARC_TURN_MIN_RAD < angle < ARC_TURN_MAX_RAD:
            arc_len += d
    if total_len <= 0:
        return 0.0
    return arc_len / total_len * 100.0


def symmetry_rate(points: Sequence[Point], tolerance: float = SYMMETRY_TOLERANCE) -> float:
    """Percentage of vertices with a mirror partner across the vertical center axis."""
    n = len(points)
    if n < 3 or calculate_perimeter(points) <= 0:
        return 0.0
    center_x = calculate_bounding_box(points).center[0]
    matched = 0
    for x, y in points:
        mirrored_x = 2 * center_x - x
        if any(abs(px - mirrored_x) < tolerance and abs(py - y) < tolerance for px, py in points):
            matched += 1
    return matched / n * 100.0


def classify_shape(arc: float, symmetry: float, vertex_count: int) -> str:
    if arc >= SHAPE_RULES["arc_ratio_high"]:
        if symmetry >= SHAPE_RULES["symmetry_high"]:
            return SHAPE_ARCHED
        return SHAPE_CURVED
    if vertex_count >= SHAPE_RULES["polygon_min_vertices"]:
        return SHAPE_POLYGONAL
    return SHAPE_RECTANGULAR


def opening_type_from_sides(left: bool, right: bool, area: float, sliding_area_threshold: float) -> str:
    if left and right:
        return OPENING_DOUBLE
    if left:
        return OPENING_LEFT_HINGE
    if right:
        return OPENING_RIGHT_HINGE
    return OPENING_SLIDING if area >= sliding_area_threshold else OPENING_FIXED


@dataclass(frozen=True)
class LoopFeatures:
    arc_ratio: float
    symmetry_rate: float
    shape_class: str
    opening_type: str
    category: str


@dataclass(frozen=True)
class _Indicator:
    handle: str
    bounds: LoopBounds


class FeatureAnalyzer:
    """
    Classifies matched loops against the indicator entities and walls of one
    drawing. Build once per import; ``analyze`` is then a pure lookup.
    """

    def __init__(
        self,
        walls: Sequence[Loop],
        entities: Iterable[FlatEntity],
        sliding_area_threshold: float = EXTRACTION_DEFAULTS["sliding_area_threshold"],
    ):
        self.sliding_area_threshold = sliding_area_threshold
        self.walls = LoopIndex(walls)
        self.indicators = [
            _Indicator(e.handle, calculate_bounding_box(e.points))
            for e in entities
            if e.line_style in INDICATOR_STYLES and e.points
        ]
        self._tree: Optional[STRtree] = None
        if self.indicators:
            self._tree = STRtree([
                box(i.bounds.min_x, i.bounds.min_y, i.bounds.max_x, i.bounds.max_y) for i in self.indicators
            ])
        logger.debug(f"Feature analyzer: {len(walls)} walls, {len(self.indicators)} indicator entities")

    def indicators_within(self, loop: Loop) -> list[_Indicator]:
        if self._tree is None:
            return []
        b = loop.bounds
        hits = sorted(int(i) for i in self._tree.query(box(b.min_x, b.min_y, b.max_x, b.max_y)))
        found = []
        for i in hits:
            ind = self.indicators[i]
            if loop.source_handle and ind.handle == loop.source_handle:
                continue
            if b.contains_box(ind.bounds):
                found.append(ind)
        return found

    def opening_type(self, loop: Loop) -> str:
        cx = loop.center[0]
        left = right = False
        for ind in self.indicators_within(loop):
            ix = ind.bounds.center[0]
            if abs(ix - cx) <= _AXIS_TOLERANCE:
                left = right = True
            elif ix < cx:
                left = True
            else:
                right = True
        return opening_type_from_sides(left, right, loop.area, self.sliding_area_threshold)

    def category(self, loop: Loop) -> str:
        return CATEGORY_REAL if self.walls.any_containing(loop.center) else CATEGORY_REFERENCE

    def analyze(self, loop: Loop) -> LoopFeatures:
        arc = arc_ratio(loop.points)
        symmetry = symmetry_rate(loop.points)
        return LoopFeatures(
            arc_ratio=arc,
            symmetry_rate=symmetry,
            shape_class=classify_shape(arc, symmetry, len(loop.points)),
            opening_type=self.opening_type(loop),
            category=self.category(loop),
        )
