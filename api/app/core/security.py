"""
Security utilities for the WhatsApp Gateway API.
"""

import asyncio
import logging
import secrets
from typing import Optional

from app.core.config import Settings, get_settings
from app.core.exceptions import AuthenticationError, ConfigurationError
from fastapi import Depends, Request

PASSWORD_HEADER = "x-api-password"
PASSWORD_BODY_FIELD = "password"

# Minimum length for a secure shared secret
MIN_API_PASSWORD_LENGTH = 16

# Set up logging
logger = logging.getLogger(__name__)

# Cryptographically secure random number generator for timing delays
secure_random = secrets.SystemRandom()


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def extract_password(request: Request) -> Optional[str]:
    """Read the caller's password from the header, falling back to the JSON body.

    Args:
        request: The FastAPI request object

    Returns:
        The provided password, or None when the request carries none
    """
    provided = request.headers.get(PASSWORD_HEADER)
    if provided:
        return provided

    if "application/json" not in request.headers.get("content-type", ""):
        return None

    try:
        body = await request.json()
    except ValueError:
        return None

    if isinstance(body, dict):
        value = body.get(PASSWORD_BODY_FIELD)
        if isinstance(value, str) and value:
            return value
    return None


def verify_password(provided: str, expected: str) -> bool:
    """Constant-time comparison of the provided and configured secrets."""
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def verify_api_password(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """FastAPI dependency guarding the protected routes.

    Args:
        request: The FastAPI request object
        settings: Application settings (overridable in tests)

    Raises:
        ConfigurationError: If API_PASSWORD is not configured
        AuthenticationError: If the password is missing or incorrect
    """
    expected = settings.API_PASSWORD
    if not expected:
        logger.error("Protected route called but API_PASSWORD is not configured")
        raise ConfigurationError("API_PASSWORD")

    provided = await extract_password(request)
    if not provided:
        logger.warning(f"Missing API password from {_client_host(request)}")
        raise AuthenticationError(error_code="MISSING_PASSWORD")

    is_valid = verify_password(provided, expected)

    # Random delay to blur timing differences (20-60ms)
    await asyncio.sleep(secure_random.uniform(0.02, 0.06))

    # Deferred logging based on result
    if not is_valid:
        logger.warning(f"Invalid API password from {_client_host(request)}")
        raise AuthenticationError(error_code="INVALID_PASSWORD")

    if len(expected) < MIN_API_PASSWORD_LENGTH:
        logger.warning(
            f"API_PASSWORD is configured with insecure length: {len(expected)} "
            f"(min: {MIN_API_PASSWORD_LENGTH})"
        )
    else:
        logger.debug(f"API access granted to {_client_host(request)}")
