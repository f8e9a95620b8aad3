"""WhatsApp session and messaging components.

Components:
    - CredentialStore: Durable, lock-protected credential directory
    - ConnectionManager: Session state machine, retries and readiness gate
    - MessageGateway: Envelope building and dispatch through the live session
    - SessionProvider / ProviderHandle: Contract for the external protocol client
"""

from app.integrations.whatsapp.connection_manager import ConnectionManager
from app.integrations.whatsapp.credential_store import (
    CredentialStore,
    CredentialStoreError,
)
from app.integrations.whatsapp.message_gateway import MessageGateway
from app.integrations.whatsapp.models import (
    ConnectionState,
    ContentKind,
    DispatchResult,
    OutboundMessage,
)
from app.integrations.whatsapp.provider import (
    CloseReason,
    DisconnectReason,
    LifecycleEvent,
    LifecycleEventType,
    ProviderHandle,
    ProviderLoadError,
    SessionProvider,
    load_session_provider,
)

__all__ = [
    "CloseReason",
    "ConnectionManager",
    "ConnectionState",
    "ContentKind",
    "CredentialStore",
    "CredentialStoreError",
    "DisconnectReason",
    "DispatchResult",
    "LifecycleEvent",
    "LifecycleEventType",
    "MessageGateway",
    "OutboundMessage",
    "ProviderHandle",
    "ProviderLoadError",
    "SessionProvider",
    "load_session_provider",
]
