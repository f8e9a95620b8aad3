import logging

from app.core.exceptions import MissingFieldError, NotConnectedError
from app.core.security import verify_api_password
from app.integrations.whatsapp.connection_manager import ConnectionManager
from app.integrations.whatsapp.dependencies import (
    get_connection_manager,
    get_message_gateway,
)
from app.integrations.whatsapp.message_gateway import MessageGateway
from app.models.messaging import (
    ErrorResponse,
    ReconnectResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusResponse,
)
from fastapi import APIRouter, Depends

router = APIRouter()
logger = logging.getLogger(__name__)

PROTECTED_PATHS = ("/send-message", "/reconnect")

_error_responses = {
    400: {"model": ErrorResponse, "description": "Missing required fields"},
    401: {"model": ErrorResponse, "description": "Missing or incorrect password"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@router.get("/status", response_model=StatusResponse, tags=["Status"])
async def get_status(
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Report whether WhatsApp is connected and ready to send messages."""
    return StatusResponse(whatsapp_connected=manager.is_ready())


@router.post(
    "/send-message",
    response_model=SendMessageResponse,
    dependencies=[Depends(verify_api_password)],
    responses={
        **_error_responses,
        503: {"model": ErrorResponse, "description": "WhatsApp is not connected"},
    },
    tags=["Messages"],
)
async def send_message(
    payload: SendMessageRequest,
    manager: ConnectionManager = Depends(get_connection_manager),
    gateway: MessageGateway = Depends(get_message_gateway),
):
    """Send a text message, or a media message with the text as caption."""
    if not payload.message:
        raise MissingFieldError("message")
    if not payload.receiver or not payload.receiver.strip():
        raise MissingFieldError("receiver")

    if not manager.is_ready():
        raise NotConnectedError()

    result = await gateway.dispatch(payload.receiver, payload.message, payload.media)
    return SendMessageResponse(data=result)


@router.post(
    "/reconnect",
    response_model=ReconnectResponse,
    dependencies=[Depends(verify_api_password)],
    responses={401: _error_responses[401], 500: _error_responses[500]},
    tags=["Connection"],
)
async def reconnect(
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Disconnect and connect WhatsApp again. Useful after a lost connection."""
    connected = await manager.reconnect()
    return ReconnectResponse(
        success=connected,
        message="Reconnection started" if connected else "Reconnection failed",
    )
