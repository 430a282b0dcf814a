"""Extraction API — DXF upload in, opening records out (JSON or SSE progress)."""
import uuid
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from takeoff.config import ExtractionConfig, standard_pattern
from takeoff.exceptions import ExtractionCancelled, TakeoffError
from takeoff.models.drawing import ParsedDrawing
from takeoff.models.progress import ExtractionProgressPayload
from takeoff.services.dxf_reader import DxfReader
from takeoff.services.extraction_pipeline import run_extraction

logger = logging.getLogger("takeoff-extraction-routes")

router = APIRouter(prefix="/api/extraction", tags=["Opening Extraction"])

ALLOWED_EXTENSIONS = (".dxf",)

_STAGE_MESSAGES = (
    (40, "Flattening block instances..."),
    (70, "Classifying closed loops..."),
    (100, "Matching labels to openings..."),
)


def _stage_message(pct: int) -> str:
    for upper, message in _STAGE_MESSAGES:
        if pct < upper:
            return message
    return "Finalising records..."


def _build_config(
    scale_factor: Optional[float],
    profile_frame_width: Optional[float],
    unit_weight_per_length: Optional[float],
    identification_pattern: Optional[str],
    identification_prefix: Optional[str],
    match_type: str,
    door_pattern: Optional[str],
    wall_area_threshold: Optional[float],
    report_unlabeled_candidates: Optional[bool],
) -> ExtractionConfig:
    """ConfigurationError here is mapped to HTTP 400 by the app exception handler."""
    if identification_prefix and not identification_pattern:
        identification_pattern = standard_pattern(identification_prefix, match_type)
    return ExtractionConfig.from_env(
        scale_factor=scale_factor,
        profile_frame_width=profile_frame_width,
        unit_weight_per_length=unit_weight_per_length,
        identification_pattern=identification_pattern,
        door_pattern=door_pattern,
        wall_area_threshold=wall_area_threshold,
        report_unlabeled_candidates=report_unlabeled_candidates,
    )


async def _read_upload(file: UploadFile) -> ParsedDrawing:
    name = (file.filename or "").lower()
    if not name.endswith(ALLOWED_EXTENSIONS):
        raise HTTPException(400, "Only DXF files accepted.")
    data = await file.read()
    # ezdxf parsing is CPU-bound; keep it off the event loop
    return await asyncio.to_thread(DxfReader().read_bytes, data, file.filename)


@router.post("/extract")
async def extract(
    file: UploadFile = File(...),
    scale_factor: Optional[float] = Form(None),
    profile_frame_width: Optional[float] = Form(None),
    unit_weight_per_length: Optional[float] = Form(None),
    identification_pattern: Optional[str] = Form(None),
    identification_prefix: Optional[str] = Form(None),
    match_type: str = Form("standard"),
    door_pattern: Optional[str] = Form(None),
    wall_area_threshold: Optional[float] = Form(None),
    report_unlabeled_candidates: Optional[bool] = Form(None),
):
    """
    Extract opening records from an uploaded DXF.

    Form fields override the TAKEOFF_* environment defaults. Either pass a raw
    ``identification_pattern`` or an ``identification_prefix`` + ``match_type``
    (standard | flexible | contains).
    """
    config = _build_config(
        scale_factor, profile_frame_width, unit_weight_per_length, identification_pattern,
        identification_prefix, match_type, door_pattern, wall_area_threshold, report_unlabeled_candidates,
    )
    drawing = await _read_upload(file)
    result = await run_extraction(drawing, config)
    return result.to_dict()


@router.post("/stream")
async def extract_stream(
    file: UploadFile = File(...),
    scale_factor: Optional[float] = Form(None),
    profile_frame_width: Optional[float] = Form(None),
    unit_weight_per_length: Optional[float] = Form(None),
    identification_pattern: Optional[str] = Form(None),
    identification_prefix: Optional[str] = Form(None),
    match_type: str = Form("standard"),
    door_pattern: Optional[str] = Form(None),
    wall_area_threshold: Optional[float] = Form(None),
    report_unlabeled_candidates: Optional[bool] = Form(None),
):
    """Server-Sent Events: one ExtractionProgressPayload per progress step, then the result."""
    config = _build_config(
        scale_factor, profile_frame_width, unit_weight_per_length, identification_pattern,
        identification_prefix, match_type, door_pattern, wall_area_threshold, report_unlabeled_candidates,
    )
    drawing = await _read_upload(file)
    import_id = uuid.uuid4().hex[:12]

    async def stream():
        queue: asyncio.Queue = asyncio.Queue()
        cancel_event = asyncio.Event()
        task = asyncio.create_task(run_extraction(drawing, config, queue.put_nowait, cancel_event))
        last_pct = -1
        try:
            while not task.done() or not queue.empty():
                try:
                    pct = await asyncio.wait_for(queue.get(), timeout=0.25)
                except asyncio.TimeoutError:
                    continue
                if pct <= last_pct:
                    continue
                last_pct = pct
                payload = ExtractionProgressPayload(
                    import_id=import_id,
                    status="running",
                    progress_pct=pct,
                    status_message=_stage_message(pct),
                )
                yield f"data: {payload.model_dump_json()}\n\n"

            try:
                result = task.result()
            except TakeoffError as exc:
                logger.warning(f"Streamed extraction {import_id} failed: {exc.message}")
                payload = ExtractionProgressPayload(
                    import_id=import_id,
                    status="failed",
                    progress_pct=max(last_pct, 0),
                    status_message="Extraction failed",
                    error=exc.message,
                )
            except Exception as exc:
                logger.exception(f"Streamed extraction {import_id} crashed")
                payload = ExtractionProgressPayload(
                    import_id=import_id,
                    status="failed",
                    progress_pct=max(last_pct, 0),
                    status_message="Extraction failed",
                    error=f"Internal error: {type(exc).__name__}",
                )
            else:
                payload = ExtractionProgressPayload(
                    import_id=import_id,
                    status="complete",
                    progress_pct=100,
                    status_message=f"{len(result.records)} openings extracted",
                    result=result.to_dict(),
                )
            yield f"data: {payload.model_dump_json()}\n\n"
        finally:
            if not task.done():
                # Client went away mid-import
                cancel_event.set()
                try:
                    await task
                except ExtractionCancelled:
                    logger.info(f"Streamed extraction {import_id} cancelled by client disconnect")

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
