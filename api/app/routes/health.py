import os
import time

import psutil  # type: ignore[import-untyped]
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


def _connection_manager(request: Request):
    return getattr(request.app.state, "connection_manager", None)


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint that monitors system resources and the WhatsApp session.

    The process is "healthy" once the session is ready. While it is connecting,
    awaiting enrollment or retrying, the status is "degraded".
    """
    # System metrics
    cpu_percent = psutil.cpu_percent()
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")

    manager = _connection_manager(request)
    if manager is None:
        whatsapp = {"state": "uninitialized", "ready": False}
    else:
        whatsapp = manager.snapshot()

    overall_status = "healthy" if whatsapp["ready"] else "degraded"

    # BUILD_ID is injected at image build time
    build_id = os.getenv("BUILD_ID", "unknown")

    return {
        "status": overall_status,
        "timestamp": int(time.time()),
        "build_id": build_id,
        "system": {
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "disk_percent": disk.percent,
        },
        "services": {"whatsapp": whatsapp},
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness probe: 200 only while the session can send messages.
    """
    manager = _connection_manager(request)
    if manager is None or not manager.is_ready():
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return {"status": "ready"}


@router.get("/health/live")
async def liveness_check():
    """
    Liveness probe that checks if the service is running.
    """
    return {"status": "alive"}
