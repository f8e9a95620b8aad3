"""Session provider contract.

The wire protocol lives outside this application. A provider turns stored
credentials into a handle that performs the handshake and reports progress
through lifecycle events; ``ConnectionManager`` is the only consumer.

Providers are loaded from the ``SESSION_PROVIDER`` setting, an import path of
the form ``"package.module:factory"`` where ``factory`` is either a
``SessionProvider`` instance or a zero-argument callable returning one.
"""

import importlib
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Credentials = Dict[str, Any]


class DisconnectReason(IntEnum):
    """Closure status codes reported by the messaging network."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


@dataclass(frozen=True)
class CloseReason:
    """Why the provider closed the connection.

    Only an explicit ``LOGGED_OUT`` status code is terminal. A missing status
    code (for example a plain transport error) is treated as retryable.
    """

    status_code: Optional[int] = None
    message: str = ""

    @property
    def is_logged_out(self) -> bool:
        return self.status_code == DisconnectReason.LOGGED_OUT

    @property
    def label(self) -> str:
        if self.status_code is None:
            return "unknown"
        try:
            return DisconnectReason(self.status_code).name.lower()
        except ValueError:
            return str(self.status_code)

    def __str__(self) -> str:
        return f"{self.label}: {self.message}" if self.message else self.label


class LifecycleEventType(str, Enum):
    ENROLLMENT_CODE = "enrollment_code"
    CONNECTION_OPEN = "connection_open"
    CONNECTION_CLOSED = "connection_closed"
    CREDENTIALS_UPDATED = "credentials_updated"


@dataclass(frozen=True)
class LifecycleEvent:
    """One event emitted by a provider handle."""

    type: LifecycleEventType
    code: Optional[str] = None
    reason: Optional[CloseReason] = None
    credentials: Credentials = field(default_factory=dict)

    @classmethod
    def enrollment_code(cls, code: str) -> "LifecycleEvent":
        return cls(LifecycleEventType.ENROLLMENT_CODE, code=code)

    @classmethod
    def connection_open(cls) -> "LifecycleEvent":
        return cls(LifecycleEventType.CONNECTION_OPEN)

    @classmethod
    def connection_closed(
        cls, status_code: Optional[int] = None, message: str = ""
    ) -> "LifecycleEvent":
        return cls(
            LifecycleEventType.CONNECTION_CLOSED,
            reason=CloseReason(status_code=status_code, message=message),
        )

    @classmethod
    def credentials_updated(cls, credentials: Credentials) -> "LifecycleEvent":
        return cls(LifecycleEventType.CREDENTIALS_UPDATED, credentials=dict(credentials))


EventListener = Callable[[LifecycleEvent], Awaitable[None]]


@runtime_checkable
class ProviderHandle(Protocol):
    """A single session against the messaging network."""

    def on_event(self, listener: EventListener) -> None:
        """Register the listener receiving this handle's lifecycle events.

        Events must be delivered one at a time, in emission order.
        """
        ...

    async def start(self) -> None:
        """Begin the handshake. Returns once it is underway; progress arrives as events."""
        ...

    async def send(self, destination: str, envelope: Dict[str, Any]) -> str:
        """Submit an envelope and return the provider-issued message id."""
        ...

    async def close(self) -> None:
        """Tear the session down. Must not emit further events."""
        ...


@runtime_checkable
class SessionProvider(Protocol):
    def create(self, credentials: Credentials) -> ProviderHandle:
        """Build a new, not yet started, handle from stored credentials."""
        ...


class ProviderLoadError(Exception):
    """Raised when SESSION_PROVIDER cannot be imported or is not a provider."""

    pass


def load_session_provider(
    import_path: str, log_level: str = "WARNING"
) -> SessionProvider:
    """Import the configured session provider.

    The provider package's root logger is raised to ``log_level`` so its
    protocol chatter does not reach the application log.

    Args:
        import_path: "package.module:factory"
        log_level: Minimum level kept from the provider's loggers

    Returns:
        The SessionProvider instance

    Raises:
        ProviderLoadError: If the module or attribute is missing or the
            resulting object does not implement ``create``
    """
    module_path, _, attribute = import_path.partition(":")
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ProviderLoadError(
            f"Cannot import session provider module '{module_path}': {e}"
        ) from e

    target = getattr(module, attribute, None)
    if target is None:
        raise ProviderLoadError(f"'{module_path}' has no attribute '{attribute}'")

    provider = target
    # Classes and factory functions are called; ready-made instances are used as-is
    if callable(target) and (
        isinstance(target, type) or not isinstance(target, SessionProvider)
    ):
        provider = target()
    if isinstance(provider, type) or not isinstance(provider, SessionProvider):
        raise ProviderLoadError(
            f"'{import_path}' did not produce a session provider "
            f"(got {type(provider).__name__})"
        )

    logging.getLogger(module_path.split(".")[0]).setLevel(log_level)
    logger.info(f"Loaded session provider {import_path}")
    return provider
