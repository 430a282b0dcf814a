"""
Standardized SSE payload models.

Every event from /api/extraction/stream MUST serialize ExtractionProgressPayload
so the viewer can render progress without branching on payload shape.
"""
from typing import Optional
from pydantic import BaseModel, Field


class ExtractionProgressPayload(BaseModel):
    """Strict contract for every SSE event emitted during an import."""
    import_id: str
    status: str                     # "running" | "complete" | "failed"
    progress_pct: int = Field(0, ge=0, le=100)
    status_message: str = ""
    result: Optional[dict] = None   # ExtractionResult.to_dict() on the final event
    error: Optional[str] = None

    model_config = {"json_schema_extra": {
        "example": {
            "import_id": "3f9c0a1b2c4d",
            "status": "running",
            "progress_pct": 42,
            "status_message": "Classifying closed loops...",
        }
    }}


class ExtractionErrorResponse(BaseModel):
    detail: str
    details: dict = {}
