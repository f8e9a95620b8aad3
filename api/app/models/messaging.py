"""Request and response models for the messaging routes."""

from datetime import datetime, timezone
from typing import Optional

from app.integrations.whatsapp.models import DispatchResult
from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatusResponse(BaseModel):
    success: bool = True
    whatsapp_connected: bool
    timestamp: datetime = Field(default_factory=utc_now)


class SendMessageRequest(BaseModel):
    """Body of POST /send-message.

    ``message`` and ``receiver`` are checked by the route so that missing and
    empty values both produce a 400 with the field name.
    """

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "required": ["message", "receiver"],
            "examples": [
                {
                    "message": "Hello, this is a test message",
                    "receiver": "1234567890@s.whatsapp.net",
                },
                {
                    "message": "Look at this image",
                    "receiver": "1234567890",
                    "media": "https://example.com/image.jpg",
                },
            ],
        },
    )

    message: Optional[str] = Field(None, description="Text to send (caption for media)")
    receiver: Optional[str] = Field(
        None,
        description="Recipient phone number, with or without @s.whatsapp.net",
    )
    media: Optional[str] = Field(
        None, description="Optional media URL (image, video, audio, document)"
    )
    password: Optional[str] = Field(
        None, description="API password, alternative to the x-api-password header"
    )


class SendMessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    data: DispatchResult
    message: str = "Message sent successfully"


class ReconnectResponse(BaseModel):
    success: bool
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: Optional[str] = None
