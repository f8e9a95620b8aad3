"""FastAPI dependencies for the WhatsApp session components.

The lifespan in ``app.main`` stores one ConnectionManager and one
MessageGateway on ``app.state``; routes reach them through these helpers.
"""

from app.integrations.whatsapp.connection_manager import ConnectionManager
from app.integrations.whatsapp.message_gateway import MessageGateway
from fastapi import Request


def get_connection_manager(request: Request) -> ConnectionManager:
    """Get the connection manager from app state.

    Raises:
        RuntimeError: If the lifespan has not initialized it.
    """
    manager = getattr(request.app.state, "connection_manager", None)
    if manager is None:
        raise RuntimeError("Connection manager not initialized")
    return manager


def get_message_gateway(request: Request) -> MessageGateway:
    """Get the message gateway from app state.

    Raises:
        RuntimeError: If the lifespan has not initialized it.
    """
    gateway = getattr(request.app.state, "message_gateway", None)
    if gateway is None:
        raise RuntimeError("Message gateway not initialized")
    return gateway
