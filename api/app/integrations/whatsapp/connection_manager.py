"""WhatsApp connection lifecycle management."""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from app.integrations.whatsapp.credential_store import CredentialStore
from app.integrations.whatsapp.enrollment import log_enrollment_code
from app.integrations.whatsapp.models import ConnectionState
from app.integrations.whatsapp.provider import (
    CloseReason,
    LifecycleEvent,
    LifecycleEventType,
    ProviderHandle,
    SessionProvider,
)
from app.metrics.connection_metrics import (
    update_connection_state,
    whatsapp_connect_attempts_total,
    whatsapp_connection_status,
    whatsapp_credential_saves_total,
    whatsapp_disconnects_total,
    whatsapp_enrollment_codes_total,
    whatsapp_retries_scheduled_total,
)

logger = logging.getLogger(__name__)

EnrollmentRenderer = Callable[[str], None]

_ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.AWAITING_ENROLLMENT,
        ConnectionState.CONNECTED,
        ConnectionState.CLOSING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.AWAITING_ENROLLMENT: {
        ConnectionState.AWAITING_ENROLLMENT,
        ConnectionState.CONNECTED,
        ConnectionState.CLOSING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.CLOSING, ConnectionState.DISCONNECTED},
    ConnectionState.CLOSING: {ConnectionState.DISCONNECTED},
}


class ConnectionManager:
    """Owns the single WhatsApp session and drives its state machine.

    Provides:
    - Connect/disconnect/reconnect with at most one live provider handle
    - Credential persistence on every provider update
    - One automatic retry per involuntary closure, except after a logout
    - A side-effect free readiness predicate for the HTTP layer

    Each connect attempt gets a new generation number. Lifecycle events are
    tagged with the generation of the handle that emitted them, and events
    from a superseded handle are ignored.

    Attributes:
        provider: SessionProvider building handles (None when unconfigured)
        credential_store: CredentialStore holding the session credentials
        reconnect_delay: Seconds between an involuntary closure and the retry
        state: Current ConnectionState
        last_disconnect_reason: Reason of the most recent closure, if any
        enrollment_code: Pending enrollment code while awaiting enrollment
    """

    def __init__(
        self,
        provider: Optional[SessionProvider],
        credential_store: CredentialStore,
        reconnect_delay: float = 3.0,
        enrollment_renderer: EnrollmentRenderer = log_enrollment_code,
    ):
        """Initialize connection manager. Does not connect.

        Args:
            provider: SessionProvider, or None if no provider is configured
            credential_store: CredentialStore for session credentials
            reconnect_delay: Fixed delay before an automatic retry (seconds)
            enrollment_renderer: Callable showing enrollment codes to an operator
        """
        self.provider = provider
        self.credential_store = credential_store
        self.reconnect_delay = reconnect_delay
        self.enrollment_renderer = enrollment_renderer

        self.state = ConnectionState.DISCONNECTED
        self.last_disconnect_reason: Optional[CloseReason] = None
        self.enrollment_code: Optional[str] = None

        self._handle: Optional[ProviderHandle] = None
        self._generation = 0
        self._retry_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._publish_state()

    @property
    def handle(self) -> Optional[ProviderHandle]:
        """The live provider handle, if any."""
        return self._handle

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def is_ready(self) -> bool:
        """True iff the session is connected and a live handle exists."""
        return self.state == ConnectionState.CONNECTED and self._handle is not None

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view of the session for health checks and diagnostics."""
        return {
            "state": self.state.value,
            "ready": self.is_ready(),
            "generation": self._generation,
            "awaiting_enrollment": self.state == ConnectionState.AWAITING_ENROLLMENT,
            "retry_pending": self.retry_pending,
            "last_disconnect_reason": (
                str(self.last_disconnect_reason) if self.last_disconnect_reason else None
            ),
        }

    async def connect(self) -> bool:
        """Start a new session from the stored credentials.

        Any existing handle is torn down first and any pending retry is
        cancelled. Returns once the handshake has been started; readiness
        arrives later through the connection-open event.

        Returns:
            True if the handshake was started, False if no handle could be
            built or started, or if a disconnect superseded the attempt
        """
        async with self._connect_lock:
            self._cancel_retry()
            if self._handle is not None or self.state != ConnectionState.DISCONNECTED:
                await self._close_session()

            if self.provider is None:
                logger.error("Cannot connect: no session provider configured")
                whatsapp_connect_attempts_total.labels(result="failed").inc()
                return False

            self._generation += 1
            generation = self._generation
            self._transition(ConnectionState.CONNECTING)
            logger.info(f"Connecting to WhatsApp (attempt generation {generation})")

            try:
                credentials = await asyncio.to_thread(self.credential_store.load)
                handle = self.provider.create(credentials)
            except Exception as e:
                logger.error(f"Failed to create WhatsApp session: {e}", exc_info=True)
                whatsapp_connect_attempts_total.labels(result="failed").inc()
                if generation == self._generation:
                    self._transition(ConnectionState.DISCONNECTED)
                return False

            if generation != self._generation:
                logger.info("Connect attempt superseded before the handshake started")
                return False

            async def listener(event: LifecycleEvent) -> None:
                await self._handle_event(generation, event)

            handle.on_event(listener)
            self._handle = handle

            try:
                await handle.start()
            except Exception as e:
                logger.error(f"Failed to start WhatsApp handshake: {e}", exc_info=True)
                whatsapp_connect_attempts_total.labels(result="failed").inc()
                if generation == self._generation:
                    self._handle = None
                    self._transition(ConnectionState.DISCONNECTED)
                return False

            if generation != self._generation:
                logger.info("Connect attempt superseded during the handshake")
                return False

            whatsapp_connect_attempts_total.labels(result="started").inc()
            return True

    async def disconnect(self) -> None:
        """Close the session and stop automatic retries.

        Credentials are kept so the next connect resumes without enrollment.
        Calling this while already disconnected is a no-op.
        """
        self._cancel_retry()
        if self.state == ConnectionState.DISCONNECTED and self._handle is None:
            logger.debug("Disconnect requested while already disconnected")
            return

        await self._close_session()
        logger.info("WhatsApp session closed (credentials preserved)")

    async def reconnect(self) -> bool:
        """Disconnect, then connect again.

        Returns:
            Result of the new connect attempt (readiness may still be pending)
        """
        logger.info("Reconnect requested")
        await self.disconnect()
        return await self.connect()

    async def _close_session(self) -> None:
        # Invalidate the current generation before touching the handle so
        # that anything it emits while closing is ignored.
        self._generation += 1
        handle, self._handle = self._handle, None
        self.enrollment_code = None

        if self.state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.CLOSING)

        await self._release_handle(handle)

        if self.state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)

    @staticmethod
    async def _release_handle(handle: Optional[ProviderHandle]) -> None:
        if handle is None:
            return
        try:
            await handle.close()
        except Exception:
            logger.debug("Error closing provider handle", exc_info=True)

    async def _handle_event(self, generation: int, event: LifecycleEvent) -> None:
        if generation != self._generation:
            logger.debug(
                f"Ignoring {event.type.value} from superseded session "
                f"(generation {generation}, current {self._generation})"
            )
            return

        if event.type == LifecycleEventType.ENROLLMENT_CODE:
            self._on_enrollment_code(event.code or "")
        elif event.type == LifecycleEventType.CONNECTION_OPEN:
            self._on_connection_open()
        elif event.type == LifecycleEventType.CREDENTIALS_UPDATED:
            await self._on_credentials_updated(event.credentials)
        elif event.type == LifecycleEventType.CONNECTION_CLOSED:
            await self._on_connection_closed(event.reason or CloseReason())

    def _on_enrollment_code(self, code: str) -> None:
        if not self._transition(ConnectionState.AWAITING_ENROLLMENT):
            return
        self.enrollment_code = code
        whatsapp_enrollment_codes_total.inc()
        try:
            self.enrollment_renderer(code)
        except Exception:
            logger.exception("Failed to render enrollment code")

    def _on_connection_open(self) -> None:
        if not self._transition(ConnectionState.CONNECTED):
            return
        self.enrollment_code = None
        logger.info("WhatsApp connection established")

    async def _on_credentials_updated(self, credentials: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.credential_store.save, credentials)
            whatsapp_credential_saves_total.labels(result="success").inc()
        except Exception:
            whatsapp_credential_saves_total.labels(result="failure").inc()
            logger.exception("Failed to persist updated WhatsApp credentials")

    async def _on_connection_closed(self, reason: CloseReason) -> None:
        # The closed handle is finished: later events from it are ignored
        self._generation += 1
        handle, self._handle = self._handle, None
        self.enrollment_code = None
        self.last_disconnect_reason = reason
        if self._transition(ConnectionState.DISCONNECTED):
            self._after_involuntary_close(reason)
        await self._release_handle(handle)

    def _after_involuntary_close(self, reason: CloseReason) -> None:
        if reason.is_logged_out:
            whatsapp_disconnects_total.labels(reason="logged_out").inc()
            logger.warning(
                f"WhatsApp session logged out ({reason}); automatic reconnect "
                "disabled until a reconnect is requested"
            )
            return

        whatsapp_disconnects_total.labels(reason="retryable").inc()
        logger.warning(
            f"WhatsApp connection closed ({reason}); reconnecting in "
            f"{self.reconnect_delay}s"
        )
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        self._retry_task = asyncio.create_task(self._retry_after_delay())
        whatsapp_retries_scheduled_total.inc()

    async def _retry_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        # Stays cancellable until connect() holds the lock and clears the reference
        if not await self.connect():
            logger.error("Automatic reconnect failed; waiting for an explicit reconnect")

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug("Cancelled pending reconnect")

    def _transition(self, new_state: ConnectionState) -> bool:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            logger.warning(
                f"Ignoring invalid transition {self.state.value} -> {new_state.value}"
            )
            return False

        if new_state != self.state:
            logger.debug(f"Connection state {self.state.value} -> {new_state.value}")
        self.state = new_state
        self._publish_state()
        return True

    def _publish_state(self) -> None:
        whatsapp_connection_status.set(1 if self.is_ready() else 0)
        update_connection_state(self.state.value, [s.value for s in ConnectionState])
