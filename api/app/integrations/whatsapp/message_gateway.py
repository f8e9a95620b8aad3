"""Outbound message formatting and dispatch."""

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from app.core.exceptions import DispatchFailedError, NotConnectedError
from app.integrations.whatsapp.connection_manager import ConnectionManager
from app.integrations.whatsapp.models import ContentKind, DispatchResult, OutboundMessage
from app.metrics.connection_metrics import whatsapp_messages_total
from app.utils.logging import redact_destination, redact_pii

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "s.whatsapp.net"

MEDIA_KIND_BY_EXTENSION: Dict[str, ContentKind] = {
    ".jpg": ContentKind.IMAGE,
    ".jpeg": ContentKind.IMAGE,
    ".png": ContentKind.IMAGE,
    ".gif": ContentKind.IMAGE,
    ".webp": ContentKind.IMAGE,
    ".mp4": ContentKind.VIDEO,
    ".avi": ContentKind.VIDEO,
    ".mov": ContentKind.VIDEO,
    ".mkv": ContentKind.VIDEO,
    ".mp3": ContentKind.AUDIO,
    ".wav": ContentKind.AUDIO,
    ".ogg": ContentKind.AUDIO,
    ".m4a": ContentKind.AUDIO,
    ".pdf": ContentKind.DOCUMENT,
    ".doc": ContentKind.DOCUMENT,
    ".docx": ContentKind.DOCUMENT,
    ".txt": ContentKind.DOCUMENT,
}

# Unknown or missing extensions are sent as images
FALLBACK_MEDIA_KIND = ContentKind.IMAGE


def normalize_destination(destination: str, default_domain: str = DEFAULT_DOMAIN) -> str:
    """Append the default domain to bare identifiers.

    "5551234567" -> "5551234567@s.whatsapp.net"; anything already containing
    "@" (users, groups, broadcast lists) is used as-is.
    """
    destination = destination.strip()
    if "@" in destination:
        return destination
    return f"{destination}@{default_domain}"


def resolve_content_kind(media_ref: Optional[str]) -> ContentKind:
    """Pick the envelope kind from the media reference's file extension.

    Works for URLs (query string and fragment are ignored) and local paths.
    """
    if media_ref is None:
        return ContentKind.TEXT

    path = urlparse(media_ref).path if "://" in media_ref else media_ref
    extension = os.path.splitext(path)[1].lower()
    return MEDIA_KIND_BY_EXTENSION.get(extension, FALLBACK_MEDIA_KIND)


def build_envelope(message: OutboundMessage) -> Dict[str, Any]:
    """Build the provider envelope for ``message``."""
    if message.media_ref is None:
        return {"text": message.body}
    return {
        message.content_kind.value: {"url": message.media_ref},
        "caption": message.body,
    }


class MessageGateway:
    """Formats outbound messages and submits them through the live session.

    The gateway never changes session state: it only reads readiness and
    sends through the handle the ConnectionManager currently owns.

    Attributes:
        connection_manager: ConnectionManager owning the session
        default_domain: Domain appended to bare destinations
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        default_domain: str = DEFAULT_DOMAIN,
    ):
        self.connection_manager = connection_manager
        self.default_domain = default_domain

    def prepare(
        self, destination: str, body: str, media_ref: Optional[str] = None
    ) -> OutboundMessage:
        """Build the OutboundMessage for a send request."""
        if media_ref is not None and not media_ref.strip():
            media_ref = None
        return OutboundMessage(
            destination=normalize_destination(destination, self.default_domain),
            body=body,
            media_ref=media_ref,
            content_kind=resolve_content_kind(media_ref),
        )

    async def dispatch(
        self, destination: str, body: str, media_ref: Optional[str] = None
    ) -> DispatchResult:
        """Send a text or media message.

        Args:
            destination: Phone number or full chat identifier
            body: Message text (used as caption when media is present)
            media_ref: Optional media URL or path

        Returns:
            DispatchResult with the provider-issued message id

        Raises:
            NotConnectedError: If the session is not ready at call time
            DispatchFailedError: If the provider rejects or fails the send
        """
        handle = self.connection_manager.handle
        if not self.connection_manager.is_ready() or handle is None:
            raise NotConnectedError()

        message = self.prepare(destination, body, media_ref)
        envelope = build_envelope(message)
        kind = message.content_kind.value

        try:
            message_id = await handle.send(message.destination, envelope)
        except Exception as e:
            whatsapp_messages_total.labels(kind=kind, result="failure").inc()
            logger.error(
                f"Failed to send {kind} message to "
                f"{redact_destination(message.destination)}: {redact_pii(str(e))}"
            )
            raise DispatchFailedError(str(e)) from e

        whatsapp_messages_total.labels(kind=kind, result="success").inc()
        logger.info(
            f"Sent {kind} message {message_id} to {redact_destination(message.destination)}"
        )
        return DispatchResult(message_id=str(message_id))
