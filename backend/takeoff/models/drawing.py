"""
Parsed-drawing contract consumed by the extraction pipeline.

The upstream parser (see services/dxf_reader.py for the ezdxf adapter) MUST
hand over a value that validates against ParsedDrawing. Anything that does
not validate is an upstream parse failure and aborts the import.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from takeoff.exceptions import UpstreamParseFailure

EntityType = Literal["line", "polyline", "circle", "arc", "text", "insert"]

Point = tuple[float, float]

# ACI sentinels
COLOR_BYBLOCK = 0
COLOR_BYLAYER = 256


class RawEntity(BaseModel):
    """One drawing entity as delivered by the parser (drawing units, local frame)."""
    type: EntityType
    handle: str = ""
    layer: str = "0"
    color: Optional[int] = None          # None / 256 = BYLAYER, 0 = BYBLOCK
    linetype: Optional[str] = None       # None / "BYLAYER", "BYBLOCK" or a name

    # line / polyline
    points: list[Point] = Field(default_factory=list)
    closed: bool = False

    # circle / arc
    center: Optional[Point] = None
    radius: Optional[float] = None
    start_angle: float = 0.0             # degrees, counter-clockwise
    end_angle: float = 360.0

    # text
    text: Optional[str] = None

    # text insertion point / block insert position
    position: Point = (0.0, 0.0)

    # insert
    name: Optional[str] = None
    scale: Point = (1.0, 1.0)
    rotation: float = 0.0                # degrees

    @model_validator(mode="after")
    def _required_geometry(self) -> "RawEntity":
        if self.type == "line" and len(self.points) != 2:
            raise ValueError(f"line {self.handle or '?'} needs exactly 2 points, got {len(self.points)}")
        if self.type in ("circle", "arc") and (self.center is None or self.radius is None):
            raise ValueError(f"{self.type} {self.handle or '?'} needs center and radius")
        if self.type == "text" and self.text is None:
            raise ValueError(f"text {self.handle or '?'} has no content")
        if self.type == "insert" and not self.name:
            raise ValueError(f"insert {self.handle or '?'} has no block name")
        return self


class BlockDefinition(BaseModel):
    entities: list[RawEntity] = Field(default_factory=list)
    base_point: Point = (0.0, 0.0)


class LayerInfo(BaseModel):
    color: int = 7
    linetype: str = "CONTINUOUS"


class ParsedDrawing(BaseModel):
    entities: list[RawEntity]
    blocks: dict[str, BlockDefinition] = Field(default_factory=dict)
    layers: dict[str, LayerInfo] = Field(default_factory=dict)

    @classmethod
    def load(cls, data) -> "ParsedDrawing":
        """
        Accept a ParsedDrawing or a plain mapping from the parser.

        Raises:
            UpstreamParseFailure: if the value is missing or does not validate.
        """
        if isinstance(data, cls):
            return data
        if data is None:
            raise UpstreamParseFailure("No drawing was supplied by the parser")
        if not isinstance(data, dict) or "entities" not in data:
            raise UpstreamParseFailure("Drawing has no entity list")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            raise UpstreamParseFailure(
                f"Malformed drawing: {exc.error_count()} invalid field(s); "
                f"first at {'.'.join(str(p) for p in first['loc'])}: {first['msg']}",
                details={"error_count": str(exc.error_count())},
            ) from exc
