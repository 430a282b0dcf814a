"""Estimator — net glass area and frame weight per opening, plus drawing totals."""
import logging
from dataclasses import dataclass, field
from typing import Iterable

from takeoff.config import EXTRACTION_DEFAULTS

logger = logging.getLogger("takeoff-estimator")


@dataclass(frozen=True)
class MaterialEstimate:
    glass_area: float
    frame_weight: float


def glass_area(area: float, perimeter: float, profile_frame_width: float) -> float:
    """Loop area less a profile strip along the whole perimeter, floored at zero."""
    return max(0.0, area - perimeter * profile_frame_width)


def frame_weight(perimeter: float, length_unit: float, unit_weight_per_length: float) -> float:
    return (perimeter / length_unit) * unit_weight_per_length


def estimate(
    area: float,
    perimeter: float,
    profile_frame_width: float = EXTRACTION_DEFAULTS["profile_frame_width"],
    unit_weight_per_length: float = EXTRACTION_DEFAULTS["unit_weight_per_length"],
    length_unit: float = EXTRACTION_DEFAULTS["length_unit"],
) -> MaterialEstimate:
    return MaterialEstimate(
        glass_area=glass_area(area, perimeter, profile_frame_width),
        frame_weight=frame_weight(perimeter, length_unit, unit_weight_per_length),
    )


@dataclass
class TakeoffSummary:
    """Drawing-level totals (areas in mm², weight in kg)."""
    total_openings: int = 0
    total_area: float = 0.0
    total_glass_area: float = 0.0
    total_frame_weight: float = 0.0
    by_kind: dict = field(default_factory=dict)
    by_opening_type: dict = field(default_factory=dict)
    by_category: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_openings": self.total_openings,
            "total_area": round(self.total_area, 2),
            "total_area_sqm": round(self.total_area / 1_000_000, 3),
            "total_glass_area": round(self.total_glass_area, 2),
            "total_frame_weight": round(self.total_frame_weight, 3),
            "by_kind": dict(self.by_kind),
            "by_opening_type": dict(self.by_opening_type),
            "by_category": dict(self.by_category),
        }


def summarize(records: Iterable) -> TakeoffSummary:
    """Aggregate opening records (anything with the OpeningRecord attributes)."""
    summary = TakeoffSummary()
    for rec in records:
        summary.total_openings += 1
        summary.total_area += rec.area
        summary.total_glass_area += rec.glass_area
        summary.total_frame_weight += rec.frame_weight
        summary.by_kind[rec.kind] = summary.by_kind.get(rec.kind, 0) + 1
        summary.by_opening_type[rec.opening_type] = summary.by_opening_type.get(rec.opening_type, 0) + 1
        summary.by_category[rec.category] = summary.by_category.get(rec.category, 0) + 1
    return summary
