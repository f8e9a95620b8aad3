"""
Middleware for logging every HTTP request.

One line per request with method, path, origin, client IP, status code and
duration. Request bodies are never logged since they may carry the API password.
"""

import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Best-effort client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log incoming requests and their outcome.

    Requests that raise past the exception handlers are logged at error
    level and re-raised.
    """

    def __init__(self, app, excluded_paths: tuple[str, ...] = ("/metrics",)):
        super().__init__(app)
        self.excluded_paths = excluded_paths

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        origin = request.headers.get("origin", "-")
        ip = client_ip(request)

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"{request.method} {request.url.path} origin={origin} ip={ip} "
                f"failed after {duration_ms:.1f}ms"
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"{request.method} {request.url.path} origin={origin} ip={ip} "
            f"status={response.status_code} duration={duration_ms:.1f}ms"
        )
        return response
