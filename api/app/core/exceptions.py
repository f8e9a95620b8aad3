"""
Custom exception hierarchy for the WhatsApp Gateway API.

This module defines a standardized exception hierarchy for consistent
error handling across the application.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class BaseAppException(HTTPException):
    """Base exception for all application errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        headers: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code or self.__class__.__name__


# Configuration Exceptions


class ConfigurationError(BaseAppException):
    """Raised when a required server-side setting is missing."""

    def __init__(self, setting: str):
        super().__init__(
            f"{setting} is not configured on the server",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="CONFIGURATION_ERROR",
        )


# Authentication Exceptions


class AuthenticationError(BaseAppException):
    """Raised when the shared secret is missing or incorrect."""

    def __init__(self, detail: str = "Unauthorized", error_code: Optional[str] = None):
        super().__init__(
            detail, status.HTTP_401_UNAUTHORIZED, error_code=error_code or "AUTH_ERROR"
        )


# Data Validation Exceptions


class ValidationError(BaseAppException):
    """Raised when request data validation fails."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = (
            f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        )
        super().__init__(detail, status.HTTP_400_BAD_REQUEST, error_code=error_code)


class MissingFieldError(ValidationError):
    """Raised when a required request field is missing or empty."""

    def __init__(self, field: str):
        super().__init__(f'Field "{field}" is required', field=field)


# Session Exceptions


class NotConnectedError(BaseAppException):
    """Raised when a send is attempted while the session is not ready."""

    def __init__(self):
        super().__init__(
            "WhatsApp is not connected. Wait for the connection to complete.",
            status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="NOT_CONNECTED",
        )


class DispatchFailedError(BaseAppException):
    """Raised when the session provider rejects or fails to deliver a message."""

    def __init__(self, detail: str):
        super().__init__(
            f"Error sending message: {detail}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="DISPATCH_FAILED",
        )
        self.reason = detail
