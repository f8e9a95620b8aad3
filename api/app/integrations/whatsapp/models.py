"""Value types shared by the WhatsApp session components."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Connection state machine states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_ENROLLMENT = "awaiting_enrollment"
    CONNECTED = "connected"
    CLOSING = "closing"


class ContentKind(str, Enum):
    """Envelope kinds understood by the session provider."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


@dataclass(frozen=True)
class OutboundMessage:
    """A single message on its way to the provider. Never persisted."""

    destination: str
    body: str
    media_ref: Optional[str] = None
    content_kind: ContentKind = ContentKind.TEXT


class DispatchResult(BaseModel):
    """Outcome of a successful dispatch."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message_id: str = Field(..., alias="messageId")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
