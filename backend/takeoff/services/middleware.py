"""
Request tracing for the takeoff API.

Every response carries ``X-Request-ID`` and ``X-Process-Time``. Extraction
uploads additionally log their body size, and an extraction slower than
SLOW_EXTRACTION_MS is logged at WARNING so oversized drawings stand out.
SSE responses are timed to the first byte; the stream itself runs on after
dispatch returns.
"""
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("takeoff-api.middleware")

SKIP_LOG_PATHS = {"/health", "/metrics"}
EXTRACTION_PREFIX = "/api/extraction"
SLOW_EXTRACTION_MS = 10_000.0


class RequestTimingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.perf_counter()
        request.state.request_id = request_id

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        path = request.url.path
        if path in SKIP_LOG_PATHS:
            return response

        extra = {
            "http_method": request.method,
            "http_path": path,
            "http_status": response.status_code,
            "request_id": request_id,
            "duration_ms": duration_ms,
        }
        level = logging.INFO
        if path.startswith(EXTRACTION_PREFIX):
            length = request.headers.get("content-length")
            if length and length.isdigit():
                extra["upload_bytes"] = int(length)
            if duration_ms > SLOW_EXTRACTION_MS:
                level = logging.WARNING
        logger.log(level, f"{request.method} {path} -> {response.status_code}", extra=extra)
        return response
