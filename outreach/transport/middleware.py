# outreach/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from outreach.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)


def run_id_from_path(path: str) -> str | None:
    """Run id from an ops path; path_params are not populated before routing."""
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "runs":
        return parts[1]
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log ops requests; /health probes are skipped"""

    QUIET_PATHS = ("/health",)

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in self.QUIET_PATHS:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        run_id = run_id_from_path(request.url.path)
        start_time = time.time()
        log_ctx = LogContext(logger, run_id=run_id, request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {request.url.path} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error_type": exc.__class__.__name__,
                    "duration_ms": duration_ms,
                },
                exc_info=True
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_ctx.info(
            f"{request.method} {request.url.path} status={response.status_code} duration={duration_ms:.2f}ms",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
        )
        return response
