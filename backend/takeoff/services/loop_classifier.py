"""
Loop Classifier — closed-shape measurement and wall/candidate bucketing.

Area uses the shoelace formula; perimeter wraps from the last vertex back to
the first. Measurements are pure functions of the points, so re-running them
on the same loop always gives the same numbers.
"""
import math
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from takeoff.config import EXTRACTION_DEFAULTS
from takeoff.models.drawing import Point
from takeoff.services.transform_flattener import FlatEntity

logger = logging.getLogger("takeoff-loop-classifier")

WALL = "wall"
CANDIDATE = "candidate"


# ── Measurements ──────────────────────────────────────────────────────────────

def calculate_area(points: Sequence[Point]) -> float:
    if len(points) < 3:
        return 0.0
    total = 0.0
    n = len(points)
    for i in range(n):
        x1, y1 = points[i]
        x2, y2 = points[(i + 1) % n]
        total += x1 * y2 - x2 * y1
    return abs(total) / 2.0


def calculate_perimeter(points: Sequence[Point]) -> float:
    if len(points) < 2:
        return 0.0
    n = len(points)
    return sum(math.dist(points[i], points[(i + 1) % n]) for i in range(n))


@dataclass(frozen=True)
class LoopBounds:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Point:
        return ((self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2)

    def contains_box(self, other: "LoopBounds", tolerance: float = 0.0) -> bool:
        return (
            other.min_x >= self.min_x - tolerance
            and other.max_x <= self.max_x + tolerance
            and other.min_y >= self.min_y - tolerance
            and other.max_y <= self.max_y + tolerance
        )


def calculate_bounding_box(points: Iterable[Point]) -> LoopBounds:
    xs = []
    ys = []
    for x, y in points:
        xs.append(x)
        ys.append(y)
    if not xs:
        return LoopBounds(0.0, 0.0, 0.0, 0.0)
    return LoopBounds(min(xs), min(ys), max(xs), max(ys))


# ── Loops ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Loop:
    points: tuple[Point, ...]
    area: float
    perimeter: float
    bounds: LoopBounds
    source_handle: str = ""
    layer: str = ""

    @property
    def width(self) -> float:
        return self.bounds.width

    @property
    def height(self) -> float:
        return self.bounds.height

    @property
    def center(self) -> Point:
        return self.bounds.center

    @property
    def aspect_ratio(self) -> float:
        short = min(self.width, self.height)
        if short <= 0:
            return math.inf
        return max(self.width, self.height) / short

    def summary(self) -> dict:
        cx, cy = self.center
        return {
            "source_handle": self.source_handle,
            "layer": self.layer,
            "center_x": round(cx, 2),
            "center_y": round(cy, 2),
            "width": round(self.width, 2),
            "height": round(self.height, 2),
            "area": round(self.area, 2),
        }


def closed_points(entity: FlatEntity, epsilon: float) -> Optional[tuple[Point, ...]]:
    """
    Return the loop vertices of a closed shape, or None if the entity is open.

    A shape is closed by flag or when its ends meet within ``epsilon``; the
    duplicated closing vertex is dropped.
    """
    pts = entity.points
    if len(pts) < 3:
        return None
    ends_meet = math.dist(pts[0], pts[-1]) <= epsilon
    if not (entity.closed or ends_meet):
        return None
    if ends_meet:
        pts = pts[:-1]
    return pts


def build_loop(entity: FlatEntity, epsilon: float) -> Optional[Loop]:
    pts = closed_points(entity, epsilon)
    if pts is None or len(pts) < 3:
        return None
    perimeter = calculate_perimeter(pts)
    if perimeter <= 0:
        return None
    return Loop(
        points=pts,
        area=calculate_area(pts),
        perimeter=perimeter,
        bounds=calculate_bounding_box(pts),
        source_handle=entity.handle,
        layer=entity.layer,
    )


class LoopClassifier:
    """Buckets closed shapes into walls and opening candidates; drops the rest."""

    def __init__(
        self,
        wall_area_threshold: float = EXTRACTION_DEFAULTS["wall_area_threshold"],
        noise_floor: float = EXTRACTION_DEFAULTS["noise_floor"],
        max_aspect_ratio: float = EXTRACTION_DEFAULTS["max_aspect_ratio"],
        closure_epsilon: float = EXTRACTION_DEFAULTS["closure_epsilon"],
    ):
        self.wall_area_threshold = wall_area_threshold
        self.noise_floor = noise_floor
        self.max_aspect_ratio = max_aspect_ratio
        self.closure_epsilon = closure_epsilon
        self.walls: list[Loop] = []
        self.candidates: list[Loop] = []
        self.discarded = 0

    def classify(self, loop: Loop) -> Optional[str]:
        if loop.area >= self.wall_area_threshold:
            return WALL
        if loop.area < self.noise_floor:
            return None
        if loop.aspect_ratio > self.max_aspect_ratio:
            return None
        return CANDIDATE

    def add(self, entity: FlatEntity) -> Optional[str]:
        """Measure one flat entity and file it; returns the bucket or None."""
        loop = build_loop(entity, self.closure_epsilon)
        if loop is None:
            return None
        bucket = self.classify(loop)
        if bucket == WALL:
            self.walls.append(loop)
        elif bucket == CANDIDATE:
            self.candidates.append(loop)
        else:
            self.discarded += 1
        return bucket

    def add_all(self, entities: Iterable[FlatEntity]) -> None:
        for entity in entities:
            self.add(entity)
