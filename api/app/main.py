"""
FastAPI application for the WhatsApp Gateway.
This module sets up the API server with routes, middleware, and error handling.
"""

import ipaddress
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from app.core.config import get_settings
from app.core.error_handlers import (
    base_exception_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from app.core.exceptions import BaseAppException
from app.integrations.whatsapp import (
    ConnectionManager,
    CredentialStore,
    MessageGateway,
    ProviderLoadError,
    SessionProvider,
    load_session_provider,
)
from app.middleware import RequestLoggingMiddleware
from app.routes import health, messaging
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator
from prometheus_fastapi_instrumentator import metrics as instrumentator_metrics

# Configure logging
logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("app.main")


def _build_provider(import_path: str, log_level: str) -> Optional[SessionProvider]:
    if not import_path:
        logger.warning(
            "SESSION_PROVIDER is not set - the gateway will serve requests "
            "but never connect to WhatsApp"
        )
        return None
    try:
        return load_session_provider(import_path, log_level=log_level)
    except ProviderLoadError as e:
        logger.error(f"Failed to load session provider: {e}")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Application startup...")

    settings = get_settings()
    app.state.settings = settings

    credential_store = CredentialStore(
        settings.AUTH_DIR, lock_timeout=settings.CREDENTIAL_LOCK_TIMEOUT_SECONDS
    )
    provider = _build_provider(settings.SESSION_PROVIDER, settings.PROVIDER_LOG_LEVEL)

    logger.info("Initializing ConnectionManager...")
    connection_manager = ConnectionManager(
        provider=provider,
        credential_store=credential_store,
        reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
    )
    message_gateway = MessageGateway(
        connection_manager, default_domain=settings.DEFAULT_DOMAIN
    )

    app.state.connection_manager = connection_manager
    app.state.message_gateway = message_gateway

    # Start the handshake; readiness arrives through the provider's events
    if not await connection_manager.connect():
        logger.warning("Initial WhatsApp connect failed - use /reconnect to retry")

    logger.info(
        f"{settings.PROJECT_NAME} listening on http://{settings.HOST}:{settings.PORT} "
        "(docs at /api-docs)"
    )

    # Yield control to the application
    yield

    # Shutdown
    logger.info("Application shutdown...")
    logger.info("Closing WhatsApp session...")
    await connection_manager.disconnect()


# Create FastAPI application
app = FastAPI(
    title=get_settings().PROJECT_NAME,
    version=get_settings().PROJECT_VERSION,
    description="Send WhatsApp messages through a password-protected HTTP API.",
    docs_url="/api-docs",
    lifespan=lifespan,
)


# Custom OpenAPI with security scheme
def custom_openapi() -> Dict[str, Any]:
    """Generate custom OpenAPI schema with API password authentication.

    Returns:
        OpenAPI schema dictionary with security schemes configured
    """
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    # Add security schemes to the OpenAPI schema
    openapi_schema["components"] = openapi_schema.get("components", {})
    openapi_schema["components"]["securitySchemes"] = {
        "ApiPasswordAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "x-api-password",
            "description": "API password (may also be sent as `password` in the JSON body)",
        },
    }

    # Apply security to protected routes
    for path, operations in openapi_schema["paths"].items():
        if path not in messaging.PROTECTED_PATHS:
            continue
        for method, operation in operations.items():
            if method == "parameters" or not isinstance(operation, dict):
                continue
            operation["security"] = [{"ApiPasswordAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi  # type: ignore[method-assign]

# Configure CORS
# Toggle credentials off when wildcard is used (Starlette forbids wildcard + credentials)
_origins = get_settings().CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=False if _origins == ["*"] else True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
logger.info("Request logging middleware registered")

# Set up Prometheus metrics
instrumentator = Instrumentator(
    should_group_status_codes=False,
    should_ignore_untemplated=True,
    should_respect_env_var=False,  # Always enable metrics
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/health", "/health/live", "/health/ready", "/metrics"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.add(instrumentator_metrics.default())
instrumentator.add(instrumentator_metrics.latency(buckets=(0.1, 0.5, 1, 2, 5, 10, 30)))

# Instrument app but DON'T expose /metrics (we have custom endpoint below)
instrumentator.instrument(app)
logger.info("Prometheus metrics instrumentation initialized")


def _is_private_client(request: Request) -> bool:
    client_host = (request.client.host if request.client else "") or ""
    if client_host in {"localhost", "testclient"}:
        return True
    # "[2001:db8::1]:8000" -> "2001:db8::1", "127.0.0.1:8000" -> "127.0.0.1"
    parsed_host = client_host.strip("[]")
    if parsed_host.count(":") == 1:
        parsed_host = parsed_host.rsplit(":", 1)[0]
    try:
        ip = ipaddress.ip_address(parsed_host)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local


@app.get("/metrics", include_in_schema=False)
async def metrics(request: Request):
    """
    Prometheus metrics endpoint.

    In production only private and loopback clients may scrape it.
    """
    _s = get_settings()
    if str(_s.ENVIRONMENT).strip().lower() in {"production", "prod"}:
        if not _is_private_client(request):
            raise HTTPException(status_code=404)

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(messaging.router)


# Register exception handlers
# Register specific application exceptions first
app.add_exception_handler(BaseAppException, base_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
# Then register generic exception handler as fallback
app.add_exception_handler(Exception, unhandled_exception_handler)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
