"""Rendering of enrollment codes for out-of-band scanning."""

import io
import logging

import qrcode

from app.utils.logging import redact_token

logger = logging.getLogger(__name__)


def render_qr_ascii(code: str) -> str:
    """Render ``code`` as a terminal-friendly QR code."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    return buffer.getvalue()


def log_enrollment_code(code: str) -> None:
    """Default enrollment renderer: write the QR code to the application log."""
    logger.warning(
        "Scan this QR code with WhatsApp (Linked devices) to enroll this gateway "
        f"(code {redact_token(code)}):\n{render_qr_ascii(code)}"
    )
