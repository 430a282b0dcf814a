"""
Extraction configuration — single source of truth for thresholds, tessellation
density, classification rules and progress bands.

Import from here in all services rather than hardcoding values.
"""
from __future__ import annotations

import os
import re
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator, model_validator

from takeoff.exceptions import ConfigurationError

logger = logging.getLogger("takeoff-config")


# ── Extraction defaults ──────────────────────────────────────────────────────
# Drawing units are assumed to be millimetres after scale_factor is applied.

EXTRACTION_DEFAULTS: dict[str, float] = {
    # 1 drawing unit = scale_factor mm (1:100 drawings in metres → 1000)
    "scale_factor": 1.0,

    # Profile face width deducted along the perimeter for net glass area (mm)
    "profile_frame_width": 50.0,

    # Linear profile weight (kg per length_unit of perimeter)
    "unit_weight_per_length": 1.5,
    "length_unit": 1000.0,             # mm per metre

    # Loop size buckets (mm²)
    "wall_area_threshold": 10_000_000.0,   # 10 m² and above is wall context
    "noise_floor": 5_000.0,                # below this is hatch/fixing noise
    "max_aspect_ratio": 40.0,              # slivers are not openings

    # Closure tolerance for open polylines whose ends meet (mm, after scaling)
    "closure_epsilon": 0.01,

    # Openings without swing indicators: at or above this area → sliding (mm²)
    "sliding_area_threshold": 1_500_000.0,
}

# Tessellation density for curves
CIRCLE_SEGMENTS: int = 64
ARC_SEGMENTS: int = 32

# Nested block instances deeper than this are truncated silently
MAX_BLOCK_DEPTH: int = 10

# Entities processed between cooperative yields
DEFAULT_BATCH_SIZE: int = 2000


# ── Fingerprint quantisation ─────────────────────────────────────────────────
# Two detections are the same physical opening when center and area land in
# the same grid cell.
FINGERPRINT_POSITION_GRID: float = 10.0
FINGERPRINT_AREA_GRID: float = 50.0


# ── Feature analysis rules ───────────────────────────────────────────────────

# Turning angle band (radians) typical of tessellated arcs
ARC_TURN_MIN_RAD: float = 0.01
ARC_TURN_MAX_RAD: float = 0.5

# Mirror match tolerance for symmetry rate (drawing units)
SYMMETRY_TOLERANCE: float = 10.0

SHAPE_RULES: dict[str, float] = {
    "arc_ratio_high": 30.0,       # % of perimeter on arcs
    "symmetry_high": 80.0,        # % of mirrored vertices matched
    "polygon_min_vertices": 5,    # low-arc loops with more vertices than a rectangle
}

# Line styles that mark swing/slide indicators inside an opening
INDICATOR_STYLES: frozenset[str] = frozenset({"dashed", "hidden", "dotted", "gray"})

# ACI colours rendered as gray on a white sheet
GRAY_COLOR_INDICES: frozenset[int] = frozenset({8, 9})
DEFAULT_COLOR_INDEX: int = 7


# ── Progress bands (percent) ─────────────────────────────────────────────────
# Each pipeline stage advances progress within its own band so values reported
# to the caller never decrease.
PROGRESS_BANDS: dict[str, tuple[int, int]] = {
    "flatten": (0, 40),
    "classify": (40, 70),
    "match": (70, 99),
}


# ── Identification standards ─────────────────────────────────────────────────
# Label numbering rules offered to estimators: "C1515" style window marks.
IDENTIFICATION_STANDARDS: dict[str, str] = {
    "standard": r"{prefix}\d{{4}}",
    "flexible": r"{prefix}\d+",
    "contains": r".*{prefix}.*",
}

DEFAULT_WINDOW_PATTERN: str = r"C\d{4}"
DEFAULT_DOOR_PATTERN: str = r"M\d{4}"


def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def standard_pattern(prefix: str, match_type: str = "standard") -> str:
    """Regex source for a label prefix under one of IDENTIFICATION_STANDARDS."""
    template = IDENTIFICATION_STANDARDS.get(match_type)
    if template is None:
        raise ConfigurationError(
            f"Unknown identification standard: {match_type}. "
            f"Expected one of {sorted(IDENTIFICATION_STANDARDS)}"
        )
    if not prefix or not prefix.strip():
        raise ConfigurationError("Identification prefix must not be empty")
    return template.format(prefix=re.escape(prefix.strip().upper()))


class ExtractionConfig(BaseModel):
    """
    Validated settings for one import.

    Patterns are compiled once here; an invalid regex fails at configuration
    time rather than per label.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    scale_factor: float = Field(EXTRACTION_DEFAULTS["scale_factor"], gt=0)
    profile_frame_width: float = Field(EXTRACTION_DEFAULTS["profile_frame_width"], ge=0)
    unit_weight_per_length: float = Field(EXTRACTION_DEFAULTS["unit_weight_per_length"], ge=0)
    length_unit: float = Field(EXTRACTION_DEFAULTS["length_unit"], gt=0)
    identification_pattern: str = DEFAULT_WINDOW_PATTERN
    door_pattern: Optional[str] = DEFAULT_DOOR_PATTERN
    wall_area_threshold: float = Field(EXTRACTION_DEFAULTS["wall_area_threshold"], gt=0)
    noise_floor: float = Field(EXTRACTION_DEFAULTS["noise_floor"], ge=0)
    max_aspect_ratio: float = Field(EXTRACTION_DEFAULTS["max_aspect_ratio"], gt=1)
    closure_epsilon: float = Field(EXTRACTION_DEFAULTS["closure_epsilon"], ge=0)
    sliding_area_threshold: float = Field(EXTRACTION_DEFAULTS["sliding_area_threshold"], ge=0)
    circle_segments: int = Field(CIRCLE_SEGMENTS, ge=8, le=1024)
    arc_segments: int = Field(ARC_SEGMENTS, ge=2, le=1024)
    max_block_depth: int = Field(MAX_BLOCK_DEPTH, ge=0, le=64)
    batch_size: int = Field(DEFAULT_BATCH_SIZE, ge=1, le=50_000)
    report_unlabeled_candidates: bool = False

    _identification_re: re.Pattern = PrivateAttr()
    _door_re: Optional[re.Pattern] = PrivateAttr(default=None)

    @field_validator("identification_pattern", "door_pattern")
    @classmethod
    def _pattern_compiles(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not value.strip():
            raise ValueError("pattern must not be empty")
        try:
            _compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _noise_below_wall(self) -> "ExtractionConfig":
        if self.noise_floor >= self.wall_area_threshold:
            raise ValueError("noise_floor must be below wall_area_threshold")
        return self

    def model_post_init(self, __context) -> None:
        self._identification_re = _compile(self.identification_pattern)
        self._door_re = _compile(self.door_pattern) if self.door_pattern else None

    @property
    def identification_re(self) -> re.Pattern:
        return self._identification_re

    @property
    def door_re(self) -> Optional[re.Pattern]:
        return self._door_re

    # ── Constructors ──────────────────────────────────────────────────────────

    @classmethod
    def create(cls, **overrides) -> "ExtractionConfig":
        """Build a config, turning validation failures into ConfigurationError."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        try:
            return cls(**clean)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid extraction configuration: {exc.error_count()} error(s)",
                details={".".join(str(p) for p in err["loc"]): err["msg"] for err in exc.errors()},
            ) from exc

    @classmethod
    def from_standard(cls, prefix: str, match_type: str = "standard", **overrides) -> "ExtractionConfig":
        """
        Build a config from a named numbering standard.

        ``prefix="C", match_type="standard"`` gives ``C\\d{4}`` (C1515, C0707).
        """
        return cls.create(identification_pattern=standard_pattern(prefix, match_type), **overrides)

    @classmethod
    def from_env(cls, **overrides) -> "ExtractionConfig":
        """
        Read TAKEOFF_* environment variables on top of the defaults.

        Keyword overrides (e.g. per-request form values) win over the
        environment; None values are ignored.
        """
        env_overrides: dict[str, object] = {}
        for name, field_info in cls.model_fields.items():
            raw = os.getenv(f"TAKEOFF_{name.upper()}")
            if raw is None:
                continue
            annotation = field_info.annotation
            try:
                if annotation is bool:
                    env_overrides[name] = raw.strip().lower() in ("1", "true", "yes", "on")
                elif annotation is int:
                    env_overrides[name] = int(raw)
                elif annotation is float:
                    env_overrides[name] = float(raw)
                else:
                    env_overrides[name] = raw
            except ValueError as exc:
                raise ConfigurationError(f"TAKEOFF_{name.upper()} is not a valid number: {raw!r}") from exc
        if env_overrides:
            logger.info(f"Extraction config overrides from environment: {sorted(env_overrides)}")
        explicit = {k: v for k, v in overrides.items() if v is not None}
        return cls.create(**{**env_overrides, **explicit})
