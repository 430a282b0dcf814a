"""
DXF Reader — ezdxf adapter producing the ParsedDrawing the pipeline consumes.

Reads model space, the block table (with base points, layouts skipped) and the
layer table. Curved polyline segments (bulges), ellipses and splines are
flattened to polylines with ``ezdxf.path``; circles and arcs are passed on as
curves and tessellated by the flattener.

Attributes attached to an INSERT are emitted as text entities in the same
container as the insert, so block-attribute window marks anchor like plain
labels.
"""
import os
import logging
import tempfile
from collections import Counter
from typing import Optional

import ezdxf
from ezdxf import path as ezpath
from pydantic import ValidationError

from takeoff.exceptions import UpstreamParseFailure
from takeoff.models.drawing import BlockDefinition, LayerInfo, ParsedDrawing, RawEntity
from takeoff.services.perf_monitor import timed

logger = logging.getLogger("takeoff-dxf-reader")

# Max distance between a flattened curve and its chord (drawing units)
FLATTENING_DISTANCE = 0.5

_CURVE_TYPES = ("ELLIPSE", "SPLINE")


def _xy(vec) -> tuple[float, float]:
    return (float(vec[0]), float(vec[1]))


def _common(entity) -> dict:
    dxf = entity.dxf
    return {
        "handle": dxf.get("handle", "") or "",
        "layer": dxf.get("layer", "0") or "0",
        "color": dxf.get("color", 256),
        "linetype": dxf.get("linetype", "BYLAYER"),
    }


class DxfReader:
    """Converts ezdxf documents into ParsedDrawing values."""

    def __init__(self, flattening_distance: float = FLATTENING_DISTANCE):
        self.flattening_distance = flattening_distance
        self.skipped: Counter = Counter()

    # ── Entry points ─────────────────────────────────────────────────────────

    @timed
    def read_file(self, file_path: str) -> ParsedDrawing:
        if not os.path.isfile(file_path):
            raise UpstreamParseFailure(f"File not found: {file_path}")
        ext = os.path.splitext(file_path)[1].lower()
        if ext != ".dxf":
            raise UpstreamParseFailure(f"Unsupported file format: {ext or '(none)'}. Expected .dxf")
        try:
            doc = ezdxf.readfile(file_path)
        except IOError as e:
            raise UpstreamParseFailure(f"Failed to read DXF file: {e}") from e
        except ezdxf.DXFStructureError as e:
            raise UpstreamParseFailure(f"Invalid or corrupted DXF file: {e}") from e
        return self.convert_document(doc)

    def read_bytes(self, data: bytes, filename: str = "upload.dxf") -> ParsedDrawing:
        """Parse uploaded DXF content (ezdxf reads from a path, so spool to a temp file)."""
        if not data:
            raise UpstreamParseFailure("Uploaded file is empty")
        ext = os.path.splitext(filename)[1].lower()
        if ext and ext != ".dxf":
            raise UpstreamParseFailure(f"Unsupported file format: {ext}. Expected .dxf")

        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".dxf")
        tmp.write(data)
        tmp.close()
        try:
            return self.read_file(tmp.name)
        finally:
            os.unlink(tmp.name)

    def convert_document(self, doc) -> ParsedDrawing:
        self.skipped.clear()
        try:
            entities = self._convert_container(doc.modelspace())
            blocks = {}
            for block in doc.blocks:
                if block.is_any_layout:
                    continue
                blocks[block.name] = BlockDefinition(
                    entities=self._convert_container(block),
                    base_point=_xy(block.block.dxf.get("base_point", (0, 0, 0))),
                )
            layers = {
                layer.dxf.name: LayerInfo(
                    color=layer.dxf.get("color", 7),
                    linetype=layer.dxf.get("linetype", "CONTINUOUS") or "CONTINUOUS",
                )
                for layer in doc.layers
            }
        except ValidationError as e:
            raise UpstreamParseFailure(f"DXF contains an entity that cannot be converted: {e}") from e

        if self.skipped:
            logger.debug(f"Unsupported entity types skipped: {dict(self.skipped)}")
        logger.info(f"DXF converted: {len(entities)} model-space entities, {len(blocks)} blocks, {len(layers)} layers")
        return ParsedDrawing(entities=entities, blocks=blocks, layers=layers)

    # ── Entity conversion ────────────────────────────────────────────────────

    def _convert_container(self, container) -> list[RawEntity]:
        out: list[RawEntity] = []
        for entity in container:
            out.extend(self._convert_entity(entity))
        return out

    def _convert_entity(self, entity) -> list[RawEntity]:
        kind = entity.dxftype()
        if kind == "LINE":
            return [RawEntity(type="line", points=[_xy(entity.dxf.start), _xy(entity.dxf.end)], **_common(entity))]
        if kind == "LWPOLYLINE":
            return self._polyline(entity, any(b for *_, b in entity.get_points("xyb")), entity.closed)
        if kind == "POLYLINE":
            if not entity.is_2d_polyline:
                self.skipped[kind] += 1
                return []
            has_bulge = any(v.dxf.get("bulge", 0) for v in entity.vertices)
            return self._polyline(entity, has_bulge, entity.is_closed)
        if kind == "CIRCLE":
            return [RawEntity(
                type="circle", center=_xy(entity.dxf.center), radius=entity.dxf.radius, **_common(entity)
            )]
        if kind == "ARC":
            return [RawEntity(
                type="arc",
                center=_xy(entity.dxf.center),
                radius=entity.dxf.radius,
                start_angle=entity.dxf.start_angle,
                end_angle=entity.dxf.end_angle,
                **_common(entity),
            )]
        if kind in _CURVE_TYPES:
            pts = [_xy(v) for v in ezpath.make_path(entity).flattening(self.flattening_distance)]
            if len(pts) < 2:
                return []
            return [RawEntity(type="polyline", points=pts, **_common(entity))]
        if kind == "TEXT":
            return [RawEntity(
                type="text", text=entity.dxf.get("text", ""), position=_xy(entity.dxf.insert), **_common(entity)
            )]
        if kind == "MTEXT":
            return [RawEntity(
                type="text", text=entity.plain_text(), position=_xy(entity.dxf.insert), **_common(entity)
            )]
        if kind == "INSERT":
            return self._insert(entity)
        self.skipped[kind] += 1
        return []

    def _polyline(self, entity, has_bulge: bool, closed: bool) -> list[RawEntity]:
        if has_bulge:
            pts = [_xy(v) for v in ezpath.make_path(entity).flattening(self.flattening_distance)]
        elif entity.dxftype() == "LWPOLYLINE":
            pts = [(float(x), float(y)) for x, y in entity.get_points("xy")]
        else:
            pts = [_xy(v.dxf.location) for v in entity.vertices]
        if len(pts) < 2:
            self.skipped["DEGENERATE_POLYLINE"] += 1
            return []
        return [RawEntity(type="polyline", points=pts, closed=closed, **_common(entity))]

    def _insert(self, entity) -> list[RawEntity]:
        dxf = entity.dxf
        out = [RawEntity(
            type="insert",
            name=dxf.name,
            position=_xy(dxf.insert),
            scale=(dxf.get("xscale", 1.0), dxf.get("yscale", 1.0)),
            rotation=dxf.get("rotation", 0.0),
            **_common(entity),
        )]
        for attrib in entity.attribs:
            text = attrib.dxf.get("text", "")
            if text:
                out.append(RawEntity(
                    type="text", text=text, position=_xy(attrib.dxf.insert), **_common(attrib)
                ))
        return out


def read_dxf(source, filename: Optional[str] = None) -> ParsedDrawing:
    """Read a DXF from a path or raw bytes."""
    reader = DxfReader()
    if isinstance(source, (bytes, bytearray)):
        return reader.read_bytes(bytes(source), filename or "upload.dxf")
    return reader.read_file(str(source))
