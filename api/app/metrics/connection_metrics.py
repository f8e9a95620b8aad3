"""Prometheus metrics for WhatsApp session lifecycle and outbound messages."""

from prometheus_client import Counter, Gauge

# Connection state
whatsapp_connection_status = Gauge(
    "whatsapp_connection_status",
    "WhatsApp session readiness (1=connected, 0=not connected)",
)

whatsapp_connection_state = Gauge(
    "whatsapp_connection_state",
    "Current connection state machine state (1 for the active state)",
    ["state"],  # disconnected, connecting, awaiting_enrollment, connected, closing
)

# Lifecycle metrics
whatsapp_connect_attempts_total = Counter(
    "whatsapp_connect_attempts_total",
    "Total connect attempts",
    ["result"],  # started, failed
)

whatsapp_disconnects_total = Counter(
    "whatsapp_disconnects_total",
    "Total involuntary session closures by classification",
    ["reason"],  # logged_out, retryable
)

whatsapp_retries_scheduled_total = Counter(
    "whatsapp_retries_scheduled_total",
    "Total automatic reconnect attempts scheduled after a closure",
)

whatsapp_enrollment_codes_total = Counter(
    "whatsapp_enrollment_codes_total",
    "Total enrollment codes emitted by the session provider",
)

whatsapp_credential_saves_total = Counter(
    "whatsapp_credential_saves_total",
    "Total credential writes triggered by provider updates",
    ["result"],  # success, failure
)

# Outbound messages
whatsapp_messages_total = Counter(
    "whatsapp_messages_total",
    "Total outbound messages by content kind and result",
    ["kind", "result"],  # kind: text, image, video, audio, document
)


def update_connection_state(state: str, states: list[str]) -> None:
    """Mark ``state`` as the active state and clear all others."""
    for name in states:
        whatsapp_connection_state.labels(state=name).set(1 if name == state else 0)
