"""
Anchor Matcher — pairs label markers with the smallest loop that encloses them.

A label inside nested outlines (sash inside frame inside wall recess) belongs
to the innermost one, so the minimum-area container wins. Each physical
opening is emitted once: the matched loop is fingerprinted on a coarse grid
and later labels landing on an already-seen fingerprint are dropped.

Bounding boxes are indexed with a shapely STRtree so a label only ray-casts
against loops whose box actually covers it.
"""
import math
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import box
from shapely.strtree import STRtree

from takeoff.config import FINGERPRINT_AREA_GRID, FINGERPRINT_POSITION_GRID, ExtractionConfig
from takeoff.models.drawing import Point
from takeoff.services.loop_classifier import Loop
from takeoff.services.transform_flattener import TextMarker

logger = logging.getLogger("takeoff-anchor-matcher")

WINDOW = "window"
DOOR = "door"

Fingerprint = tuple[int, int, int]


def point_in_polygon(point: Point, polygon: Sequence[Point]) -> bool:
    """Even-odd ray cast towards +x."""
    x, y = point
    inside = False
    n = len(polygon)
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i]
        xj, yj = polygon[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def fingerprint(loop: Loop) -> Fingerprint:
    cx, cy = loop.center
    return (
        _round_half_up(cx / FINGERPRINT_POSITION_GRID),
        _round_half_up(cy / FINGERPRINT_POSITION_GRID),
        _round_half_up(loop.area / FINGERPRINT_AREA_GRID),
    )


class LoopIndex:
    """STRtree over loop bounding boxes with exact polygon containment on top."""

    def __init__(self, loops: Sequence[Loop]):
        self.loops = list(loops)
        self._tree: Optional[STRtree] = None
        if self.loops:
            self._tree = STRtree([
                box(loop.bounds.min_x, loop.bounds.min_y, loop.bounds.max_x, loop.bounds.max_y)
                for loop in self.loops
            ])

    def containing(self, point: Point) -> list[Loop]:
        """Loops whose polygon contains ``point``, in input order."""
        if self._tree is None:
            return []
        hits = sorted(int(i) for i in self._tree.query(ShapelyPoint(point)))
        return [self.loops[i] for i in hits if point_in_polygon(point, self.loops[i].points)]

    def smallest_containing(self, point: Point) -> Optional[Loop]:
        best: Optional[Loop] = None
        for loop in self.containing(point):
            # Strict comparison keeps the earliest loop on equal areas
            if best is None or loop.area < best.area:
                best = loop
        return best

    def any_containing(self, point: Point) -> bool:
        return bool(self.containing(point))


@dataclass(frozen=True)
class AnchorMatch:
    label: str
    kind: str
    loop: Loop
    fingerprint: Fingerprint
    marker: TextMarker


def label_kind(text: str, config: ExtractionConfig) -> Optional[str]:
    """``window`` / ``door`` when the label text matches a pattern, else None."""
    if config.identification_re.search(text):
        return WINDOW
    if config.door_re is not None and config.door_re.search(text):
        return DOOR
    return None


class AnchorMatcher:
    """
    Stateful over one import: the seen-fingerprint set spans every batch of
    markers, so batches must be fed in a stable order for stable output.
    """

    def __init__(self, candidates: Sequence[Loop], config: ExtractionConfig):
        self.config = config
        self.index = LoopIndex(candidates)
        self.seen: set[Fingerprint] = set()
        self.unmatched_labels = 0
        self.duplicate_labels = 0

    def match(self, marker: TextMarker) -> Optional[AnchorMatch]:
        kind = label_kind(marker.text, self.config)
        if kind is None:
            return None
        loop = self.index.smallest_containing(marker.position)
        if loop is None:
            self.unmatched_labels += 1
            return None
        key = fingerprint(loop)
        if key in self.seen:
            self.duplicate_labels += 1
            logger.debug(f"Label {marker.text} repeats opening at fingerprint {key}; keeping first match")
            return None
        self.seen.add(key)
        return AnchorMatch(label=marker.text, kind=kind, loop=loop, fingerprint=key, marker=marker)

    def match_all(self, markers: Iterable[TextMarker]) -> list[AnchorMatch]:
        out = []
        for marker in markers:
            found = self.match(marker)
            if found is not None:
                out.append(found)
        return out

    def unlabeled(self) -> list[Loop]:
        """Candidates that no label claimed, by fingerprint."""
        return [loop for loop in self.index.loops if fingerprint(loop) not in self.seen]
