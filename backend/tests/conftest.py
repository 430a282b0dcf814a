"""
conftest.py — Shared pytest fixtures for the takeoff engine test suite.

No database or external service fixtures are defined here. Pipeline tests run
the async extraction with ``asyncio.run``; DXF tests build documents in memory
with ``ezdxf.new()``.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``takeoff.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any takeoff imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


def rect_points(x: float, y: float, w: float, h: float) -> list:
    return [(x, y), (x + w, y), (x + w, y + h), (x, y + h)]


def rect(handle: str, x: float, y: float, w: float, h: float, **extra) -> dict:
    """Closed polyline rectangle as the parser would deliver it."""
    return {"type": "polyline", "handle": handle, "points": rect_points(x, y, w, h), "closed": True, **extra}


def text(label: str, x: float, y: float, handle: str = "") -> dict:
    return {"type": "text", "handle": handle, "text": label, "position": (x, y)}


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def default_config():
    """
    ExtractionConfig with all defaults.

    Defaults:
      scale 1, frame width 50 mm, 1.5 kg/m, window C\\d{4}, door M\\d{4},
      wall >= 10 m², noise < 5000 mm², aspect <= 40, sliding >= 1.5 m².
    """
    from takeoff.config import ExtractionConfig
    return ExtractionConfig()


@pytest.fixture(scope="session")
def small_batch_config():
    """Batch size 1 so every entity is its own batch (many progress steps)."""
    from takeoff.config import ExtractionConfig
    return ExtractionConfig(batch_size=1)


# ---------------------------------------------------------------------------
# Sample drawings
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_drawing():
    """
    A 10 m x 5 m wall outline with openings inside and one reference window
    drawn beside it (all mm).

      W1   wall            (0,0)       10000 x 5000
      R1   window C1515    (1000,1000)  1500 x 1500   labelled twice
      R2   outer frame     (4000,1000)  1200 x 1200   unlabelled
      R3   inner sash      (4100,1100)  1000 x 1000   C0909 (inside R2 too)
      R4   door M0921      (7000,500)    900 x 2100   dashed swing on the left
      T1   fixing plate    (8000,4000)    50 x 50     C9999 (below noise floor)
      R5   ref. window     (12000,0)    2000 x 2000   C2020, outside the wall

    Drawing extents: (0,0)-(14000,5000), center (7000,2500).
    """
    return {
        "entities": [
            rect("W1", 0, 0, 10000, 5000),
            rect("R1", 1000, 1000, 1500, 1500),
            rect("R2", 4000, 1000, 1200, 1200),
            rect("R3", 4100, 1100, 1000, 1000),
            rect("R4", 7000, 500, 900, 2100),
            {"type": "line", "handle": "D1", "points": [(7050, 600), (7350, 2500)], "linetype": "DASHED"},
            rect("T1", 8000, 4000, 50, 50),
            rect("R5", 12000, 0, 2000, 2000),
            text("C1515", 1700, 1700, "L1"),
            text("c1515", 2000, 2000, "L2"),
            text("C0909", 4600, 1600, "L3"),
            text("M0921", 7450, 1550, "L4"),
            text("C9999", 8025, 4025, "L5"),
            text("C2020", 13000, 1000, "L6"),
            text("ELEVATION A", 5000, 4500, "L7"),
        ],
        "blocks": {},
        "layers": {},
    }


def build_elevation_doc():
    """
    Small real DXF elevation built with ezdxf (setup=True loads DASHED).

      wall     LWPOLYLINE (0,0) 10000 x 5000
      C1515    LWPOLYLINE (1000,1000) 1500 x 1500 + TEXT label
      M0921    LWPOLYLINE (7000,500) 900 x 2100 + MTEXT label + DASHED swing line
    """
    import ezdxf

    doc = ezdxf.new("R2010", setup=True)
    msp = doc.modelspace()
    msp.add_lwpolyline(rect_points(0, 0, 10000, 5000), close=True)
    msp.add_lwpolyline(rect_points(1000, 1000, 1500, 1500), close=True)
    msp.add_text("C1515", dxfattribs={"insert": (1700, 1700)})
    msp.add_lwpolyline(rect_points(7000, 500, 900, 2100), close=True)
    msp.add_mtext("M0921", dxfattribs={"insert": (7450, 1550)})
    msp.add_line((7050, 600), (7350, 2500), dxfattribs={"linetype": "DASHED"})
    return doc


@pytest.fixture
def elevation_dxf(tmp_path):
    """Path to the saved build_elevation_doc() file."""
    path = tmp_path / "elevation.dxf"
    build_elevation_doc().saveas(path)
    return path


@pytest.fixture
def nested_block_drawing():
    """
    Window block placed through a two-level block chain.

      WIN    1000 x 1000 rectangle + "C1010" label, base point (0,0)
      BAY    two WIN inserts at (0,0) and (2000,0)
      model  one BAY insert at (5000,5000) scale 1 rotation 0

    Both windows fingerprint differently, so two records come out.
    """
    return {
        "entities": [
            {"type": "insert", "handle": "I1", "name": "BAY", "position": (5000, 5000)},
        ],
        "blocks": {
            "WIN": {"entities": [rect("", 0, 0, 1000, 1000), text("C1010", 500, 500)]},
            "BAY": {"entities": [
                {"type": "insert", "name": "WIN", "position": (0, 0)},
                {"type": "insert", "name": "WIN", "position": (2000, 0)},
            ]},
        },
    }
