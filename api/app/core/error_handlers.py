"""
Centralized error handlers for the WhatsApp Gateway API.

Every handled failure is rendered with the same envelope:
``{"success": false, "error": <message>, "code": <error code>}``.
"""

import logging

from app.core.exceptions import BaseAppException
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def _error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "code": code},
    )


async def base_exception_handler(
    request: Request, exc: BaseAppException
) -> JSONResponse:
    """Handle all application-specific exceptions.

    Args:
        request: The incoming request that caused the exception
        exc: The application exception that was raised

    Returns:
        JSON response with standardized error format
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application error: {exc.error_code} - {exc.detail}",
        extra={
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return _error_response(exc.status_code, str(exc.detail), exc.error_code)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Map FastAPI body validation failures to a 400 envelope.

    Only the failing locations are logged; submitted values are not.
    """
    locations = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    logger.warning(
        f"Request validation failed on {request.url.path}: {locations}",
        extra={"path": request.url.path, "method": request.method},
    )

    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request body",
        "VALIDATION_ERROR",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected errors.

    Args:
        request: The incoming request that caused the exception
        exc: The unhandled exception that was raised

    Returns:
        JSON response with generic error message (no sensitive details)
    """
    logger.exception(
        f"Unhandled exception: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
    )

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "INTERNAL_SERVER_ERROR",
    )
