"""
Geometry Extractor — global bounds and drawing-centred coordinates.

Everything downstream (loops, markers, OpeningRecord.points) is expressed
relative to the drawing center so the renderer can rebuild absolute positions
by adding ``center`` back.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ezdxf.math import BoundingBox2d

from takeoff.models.drawing import Point
from takeoff.services.transform_flattener import FlatEntity

logger = logging.getLogger("takeoff-geometry")


@dataclass
class BoundsInfo:
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 0.0
    max_y: float = 0.0

    @property
    def width(self) -> float:
        return abs(self.max_x - self.min_x)

    @property
    def height(self) -> float:
        return abs(self.max_y - self.min_y)

    @property
    def center(self) -> Point:
        return ((self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2)

    def to_dict(self) -> dict:
        return {
            "min_x": round(self.min_x, 2),
            "min_y": round(self.min_y, 2),
            "max_x": round(self.max_x, 2),
            "max_y": round(self.max_y, 2),
            "width": round(self.width, 2),
            "height": round(self.height, 2),
        }


def compute_bounds(entities: Iterable[FlatEntity]) -> Optional[BoundsInfo]:
    """Bounding box over every flat point; None for a drawing with no geometry."""
    bbox = BoundingBox2d()
    for entity in entities:
        if entity.points:
            bbox.extend(entity.points)
    if not bbox.has_data:
        return None
    return BoundsInfo(bbox.extmin.x, bbox.extmin.y, bbox.extmax.x, bbox.extmax.y)


def drawing_center(bounds: Optional[BoundsInfo]) -> Point:
    """Midpoint of the drawing extents; the origin for an empty drawing."""
    center = bounds.center if bounds else (0.0, 0.0)
    logger.debug(f"Drawing center at ({center[0]:.2f}, {center[1]:.2f})")
    return center

