"""
Middleware for the FastAPI application.

Request tracking with per-request ids and timing.
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging_config import get_logger

logger = get_logger(__name__)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """
    Track requests with unique IDs and log request/response details.

    Adds:
    - X-Request-ID header to all responses (echoed when the client sent one)
    - Request duration logging with structured context
    Health checks are passed through without logging.
    """

    QUIET_PATHS = {"/api/v1/health", "/health"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        if request.url.path in self.QUIET_PATHS:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    **context,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                **context,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "role": getattr(request.state, "role", None),
            },
        )
        return response
