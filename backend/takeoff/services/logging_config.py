"""
Structured logging configuration for the takeoff engine.

Pipeline log calls pass their context through ``extra=``. The JSON formatter
groups those fields so an import can be followed across stages:

    {"...", "extraction": {"import_id": "3f9c0a1b2c4d", "stage": "flatten",
                           "duration_ms": 41.7}}

and request lines from RequestTimingMiddleware carry a ``request`` group.
"""
import logging
import json
import sys
from datetime import datetime, timezone

# extra= keys set by extraction_pipeline.py and perf_monitor.stage_timer
EXTRACTION_FIELDS = ("import_id", "stage", "duration_ms", "entity_count", "record_count", "function")

# extra= keys set by middleware.RequestTimingMiddleware
REQUEST_FIELDS = ("request_id", "http_method", "http_path", "http_status", "upload_bytes")


def _collect(record: logging.LogRecord, keys: tuple) -> dict:
    return {key: getattr(record, key) for key in keys if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter for production."""
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        extraction = _collect(record, EXTRACTION_FIELDS)
        if extraction:
            log_entry["extraction"] = extraction
        request = _collect(record, REQUEST_FIELDS)
        if request:
            log_entry["request"] = request
        return json.dumps(log_entry, default=str)


class StageFormatter(logging.Formatter):
    """Plain-text formatter for local runs; appends ``[import stage duration]`` when present."""
    def format(self, record):
        line = super().format(record)
        extraction = _collect(record, ("import_id", "stage", "duration_ms"))
        if extraction:
            line += " [" + " ".join(f"{k}={v}" for k, v in extraction.items()) + "]"
        return line


def setup_logging(level: str = "INFO", json_output: bool = True):
    """Configure application logging."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(StageFormatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
        ))

    root.handlers = [handler]

    # ezdxf reports every recoverable structure problem at INFO
    for name in ["uvicorn.access", "httpcore", "httpx", "ezdxf"]:
        logging.getLogger(name).setLevel(logging.WARNING)
