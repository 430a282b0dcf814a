"""
Transform Flattener — resolves nested block instances into world-space geometry.

Each insert composes its position/scale/rotation onto the parent transform:

    offset'   = parent.offset + rotate(child.position * parent.scale, parent.rotation)
    scale'    = parent.scale * child.scale
    rotation' = parent.rotation + child.rotation

Curves are tessellated in the block's local frame and the resulting points are
transformed, so mirrored and non-uniformly scaled instances come out right
without special cases. Descent stops silently at the configured depth, so
self-referencing block graphs terminate. The walk keeps its own stack of open
containers and yields one item at a time, which lets the pipeline batch the
expanded output rather than the top-level entity list.
"""
import math
import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Union

from takeoff.config import (
    ARC_SEGMENTS,
    CIRCLE_SEGMENTS,
    DEFAULT_COLOR_INDEX,
    GRAY_COLOR_INDICES,
    MAX_BLOCK_DEPTH,
)
from takeoff.models.drawing import COLOR_BYBLOCK, COLOR_BYLAYER, BlockDefinition, LayerInfo, Point, RawEntity

logger = logging.getLogger("takeoff-flattener")

_BYLAYER = "BYLAYER"
_BYBLOCK = "BYBLOCK"
_DEFAULT_LINETYPE = "CONTINUOUS"


# ── Data classes ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Transform:
    offset: Point = (0.0, 0.0)
    scale: Point = (1.0, 1.0)
    rotation: float = 0.0  # degrees

    @classmethod
    def identity(cls) -> "Transform":
        return cls()

    @classmethod
    def scaled(cls, factor: float) -> "Transform":
        return cls(scale=(factor, factor))

    def apply(self, point: Point) -> Point:
        return self.apply_all((point,))[0]

    def apply_all(self, points: Iterable[Point]) -> tuple[Point, ...]:
        rad = math.radians(self.rotation)
        cos_r, sin_r = math.cos(rad), math.sin(rad)
        sx, sy = self.scale
        ox, oy = self.offset
        out = []
        for px, py in points:
            x = px * sx
            y = py * sy
            out.append((ox + x * cos_r - y * sin_r, oy + x * sin_r + y * cos_r))
        return tuple(out)

    def compose(
        self,
        position: Point,
        scale: Point = (1.0, 1.0),
        rotation: float = 0.0,
        base_point: Point = (0.0, 0.0),
    ) -> "Transform":
        """Transform of a child instance placed at ``position`` inside this frame."""
        child = Transform(
            offset=self.apply(position),
            scale=(self.scale[0] * scale[0], self.scale[1] * scale[1]),
            rotation=self.rotation + rotation,
        )
        if base_point[0] or base_point[1]:
            # Block geometry is drawn relative to its base point
            child = Transform(
                offset=child.apply((-base_point[0], -base_point[1])),
                scale=child.scale,
                rotation=child.rotation,
            )
        return child


@dataclass(frozen=True)
class FlatEntity:
    entity_type: str
    handle: str
    layer: str
    points: tuple[Point, ...]
    closed: bool = False
    color: int = DEFAULT_COLOR_INDEX
    line_style: str = "continuous"

    def translated(self, dx: float, dy: float) -> "FlatEntity":
        return FlatEntity(
            entity_type=self.entity_type,
            handle=self.handle,
            layer=self.layer,
            points=tuple((x + dx, y + dy) for x, y in self.points),
            closed=self.closed,
            color=self.color,
            line_style=self.line_style,
        )


@dataclass(frozen=True)
class TextMarker:
    text: str
    position: Point
    handle: str = ""
    layer: str = ""

    def translated(self, dx: float, dy: float) -> "TextMarker":
        return TextMarker(self.text, (self.position[0] + dx, self.position[1] + dy), self.handle, self.layer)


@dataclass
class FlattenStats:
    truncated_branches: int = 0
    missing_blocks: set = field(default_factory=set)


@dataclass
class _Frame:
    """One open container on the walk stack (model space or a block body)."""
    entities: Iterator[RawEntity]
    transform: Transform
    depth: int
    color: int
    linetype: str
    layer: Optional[str]


# ── Style resolution ──────────────────────────────────────────────────────────

def classify_line_style(linetype: Optional[str], color: int) -> str:
    """Map a line-type name and resolved colour to one of the indicator styles."""
    name = (linetype or "").upper()
    if "HIDDEN" in name:
        return "hidden"
    if "DASH" in name:
        return "dashed"
    if "DOT" in name:
        return "dotted"
    if color in GRAY_COLOR_INDICES:
        return "gray"
    return "continuous"


def resolve_color(entity: RawEntity, layer: Optional[LayerInfo], parent_color: int) -> int:
    color = entity.color
    if color is None or color == COLOR_BYLAYER:
        color = layer.color if layer else DEFAULT_COLOR_INDEX
    elif color == COLOR_BYBLOCK:
        color = parent_color
    # Negative layer colour means the layer is switched off; the hue is the same
    color = abs(color)
    if color in (COLOR_BYBLOCK, COLOR_BYLAYER):
        return DEFAULT_COLOR_INDEX
    return color


def resolve_linetype(entity: RawEntity, layer: Optional[LayerInfo], parent_linetype: str) -> str:
    name = (entity.linetype or _BYLAYER).upper()
    if name == _BYLAYER:
        return (layer.linetype if layer else _DEFAULT_LINETYPE).upper()
    if name == _BYBLOCK:
        return parent_linetype
    return name


# ── Tessellation ──────────────────────────────────────────────────────────────

def tessellate_circle(center: Point, radius: float, segments: int = CIRCLE_SEGMENTS) -> list[Point]:
    cx, cy = center
    step = 2 * math.pi / segments
    return [(cx + radius * math.cos(i * step), cy + radius * math.sin(i * step)) for i in range(segments)]


def tessellate_arc(
    center: Point,
    radius: float,
    start_angle: float,
    end_angle: float,
    segments: int = ARC_SEGMENTS,
) -> list[Point]:
    """Sample an arc counter-clockwise from start to end (degrees), end inclusive."""
    start = start_angle
    end = end_angle
    while end <= start:
        end += 360.0
    span = math.radians(end - start)
    start_rad = math.radians(start)
    cx, cy = center
    return [
        (cx + radius * math.cos(start_rad + span * i / segments),
         cy + radius * math.sin(start_rad + span * i / segments))
        for i in range(segments + 1)
    ]


# ── Flattener ─────────────────────────────────────────────────────────────────

class TransformFlattener:
    """
    Walks the block-instance tree of one drawing.

    One instance serves one import; ``stats`` accumulates truncation and
    missing-block counts across every call.
    """

    def __init__(
        self,
        blocks: dict[str, BlockDefinition],
        layers: dict[str, LayerInfo],
        max_depth: int = MAX_BLOCK_DEPTH,
        circle_segments: int = CIRCLE_SEGMENTS,
        arc_segments: int = ARC_SEGMENTS,
    ):
        self.blocks = blocks
        self.layers = layers
        self.max_depth = max_depth
        self.circle_segments = circle_segments
        self.arc_segments = arc_segments
        self.stats = FlattenStats()

    def flatten(
        self,
        entities: Iterable[RawEntity],
        transform: Optional[Transform] = None,
        depth: int = 0,
        parent_color: int = DEFAULT_COLOR_INDEX,
        parent_linetype: str = _DEFAULT_LINETYPE,
        parent_layer: Optional[str] = None,
    ) -> tuple[list[FlatEntity], list[TextMarker]]:
        """Flatten a list of entities placed under ``transform`` at ``depth``."""
        flat: list[FlatEntity] = []
        markers: list[TextMarker] = []
        for item in self.walk(entities, transform, depth, parent_color, parent_linetype, parent_layer):
            if isinstance(item, TextMarker):
                markers.append(item)
            else:
                flat.append(item)
        return flat, markers

    def walk(
        self,
        entities: Iterable[RawEntity],
        transform: Optional[Transform] = None,
        depth: int = 0,
        parent_color: int = DEFAULT_COLOR_INDEX,
        parent_linetype: str = _DEFAULT_LINETYPE,
        parent_layer: Optional[str] = None,
    ) -> Iterator[Union[FlatEntity, TextMarker]]:
        """
        Yield flat entities and text markers one at a time, depth first in
        drawing order.

        Block expansion uses an explicit stack of open containers instead of
        recursion, so a caller can stop between any two yielded items even
        when the whole drawing sits inside a single insert.
        """
        stack = [_Frame(
            iter(entities), transform or Transform.identity(), depth, parent_color, parent_linetype, parent_layer
        )]
        while stack:
            frame = stack[-1]
            entity = next(frame.entities, None)
            if entity is None:
                stack.pop()
                continue

            # Entities on layer 0 inside a block take the layer of the insert
            layer_name = frame.layer if (entity.layer == "0" and frame.layer) else entity.layer
            layer = self.layers.get(layer_name)

            if entity.type == "text":
                text = (entity.text or "").strip().upper()
                if text:
                    yield TextMarker(text, frame.transform.apply(entity.position), entity.handle, layer_name)
                continue

            color = resolve_color(entity, layer, frame.color)
            linetype = resolve_linetype(entity, layer, frame.linetype)

            if entity.type == "insert":
                child = self._enter_insert(entity, frame.transform, frame.depth)
                if child is not None:
                    block, child_transform = child
                    stack.append(_Frame(
                        iter(block.entities), child_transform, frame.depth + 1, color, linetype, layer_name
                    ))
                continue

            yield self._flat_entity(entity, frame.transform, layer_name, color, linetype)

    def estimate_count(self, entities: Iterable[RawEntity], depth: int = 0) -> int:
        """
        Upper bound on the items ``walk`` yields; blank text is counted but
        never yielded.

        Block totals are memoised per (block, depth), so a block placed
        thousands of times is only counted once per nesting level.
        """
        memo: dict[tuple[str, int], int] = {}

        def count(items: Iterable[RawEntity], level: int) -> int:
            total = 0
            for entity in items:
                if entity.type != "insert":
                    total += 1
                    continue
                block = self.blocks.get(entity.name)
                if block is None or level + 1 > self.max_depth:
                    continue
                key = (entity.name, level + 1)
                if key not in memo:
                    memo[key] = count(block.entities, level + 1)
                total += memo[key]
            return total

        return count(entities, depth)

    def _flat_entity(
        self,
        entity: RawEntity,
        transform: Transform,
        layer_name: str,
        color: int,
        linetype: str,
    ) -> FlatEntity:
        closed = False
        if entity.type == "line":
            local = entity.points
        elif entity.type == "polyline":
            local = entity.points
            closed = entity.closed
        elif entity.type == "circle":
            local = tessellate_circle(entity.center, entity.radius, self.circle_segments)
            closed = True
        else:  # arc
            local = tessellate_arc(
                entity.center, entity.radius, entity.start_angle, entity.end_angle, self.arc_segments
            )

        return FlatEntity(
            entity_type=entity.type,
            handle=entity.handle,
            layer=layer_name,
            points=transform.apply_all(local),
            closed=closed,
            color=color,
            line_style=classify_line_style(linetype, color),
        )

    def _enter_insert(
        self,
        entity: RawEntity,
        transform: Transform,
        depth: int,
    ) -> Optional[tuple[BlockDefinition, Transform]]:
        """Block and child transform for an insert, or None when it is skipped."""
        block = self.blocks.get(entity.name)
        if block is None:
            if entity.name not in self.stats.missing_blocks:
                logger.debug(f"Insert {entity.handle or '?'} references unknown block {entity.name!r}")
            self.stats.missing_blocks.add(entity.name)
            return None

        if depth + 1 > self.max_depth:
            self.stats.truncated_branches += 1
            return None

        return block, transform.compose(entity.position, entity.scale, entity.rotation, block.base_point)


def flatten(
    entities: Iterable[RawEntity],
    blocks: dict[str, BlockDefinition],
    transform: Optional[Transform] = None,
    depth: int = 0,
    layers: Optional[dict[str, LayerInfo]] = None,
    max_depth: int = MAX_BLOCK_DEPTH,
) -> tuple[list[FlatEntity], list[TextMarker]]:
    """Flatten ``entities`` in one call with default tessellation density."""
    flattener = TransformFlattener(blocks, layers or {}, max_depth=max_depth)
    return flattener.flatten(entities, transform, depth)
