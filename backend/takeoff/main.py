"""
Takeoff Engine API
FastAPI service that turns DXF drawings into window/door opening records.
"""
import os
import sys
import time
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from takeoff.config import ExtractionConfig
from takeoff.exceptions import ConfigurationError, UpstreamParseFailure
from takeoff.models.progress import ExtractionErrorResponse
from takeoff.services.logging_config import setup_logging
from takeoff.services.middleware import RequestTimingMiddleware
from takeoff.services.perf_monitor import tracker as perf_tracker

# Load .env in dev (no-op when the file is missing)
load_dotenv()

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("takeoff-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

# Fail fast on a bad TAKEOFF_* environment rather than on the first upload
try:
    ExtractionConfig.from_env()
except ConfigurationError as e:
    logger.error(f"Invalid TAKEOFF_* environment: {e.message} {e.details}")
    raise

app = FastAPI(
    title="Takeoff Engine API",
    version="1.0.0",
    description="Window and door takeoff from architectural DXF drawings",
)

_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "X-Requested-With"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

from takeoff.api.extraction_routes import router as extraction_router  # noqa: E402

app.include_router(extraction_router)


@app.exception_handler(UpstreamParseFailure)
async def upstream_parse_failure_handler(request: Request, exc: UpstreamParseFailure):
    return JSONResponse(status_code=400, content=ExtractionErrorResponse(detail=exc.message, details=exc.details).model_dump())


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content=ExtractionErrorResponse(detail=exc.message, details=exc.details).model_dump())


@app.get("/health")
async def health_check():
    return {"status": "active", "version": "1.0.0"}


@app.get("/metrics")
async def metrics():
    """
    Performance metrics endpoint.

    Import throughput, average duration, stage timings and error counts from
    the in-process PerformanceTracker, plus peak process memory.
    """
    import resource  # Unix only

    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is in kilobytes on Linux, bytes on macOS
    if sys.platform == "darwin":
        memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
    else:
        memory_mb = round(usage.ru_maxrss / 1024, 2)

    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **perf_tracker.get_metrics(),
    }
