"""Unit tests for the WhatsApp ConnectionManager state machine."""

import asyncio
from unittest.mock import patch

import pytest
from app.integrations.whatsapp.connection_manager import ConnectionManager
from app.integrations.whatsapp.credential_store import (
    CredentialStore,
    CredentialStoreError,
)
from app.integrations.whatsapp.models import ConnectionState
from app.integrations.whatsapp.provider import DisconnectReason, LifecycleEvent

# Comfortably longer than the 0.01s reconnect delay used by the fixtures
RETRY_WAIT = 0.1


async def _connect_and_open(manager, provider):
    assert await manager.connect() is True
    handle = provider.last_handle
    await handle.emit(LifecycleEvent.connection_open())
    return handle


class TestConnectionManagerInit:
    """Test ConnectionManager initialization."""

    def test_init_state(self, connection_manager):
        """A new manager is disconnected and does not connect on its own."""
        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.is_ready() is False
        assert connection_manager.handle is None
        assert connection_manager.retry_pending is False

    def test_snapshot_when_disconnected(self, connection_manager):
        snapshot = connection_manager.snapshot()

        assert snapshot["state"] == "disconnected"
        assert snapshot["ready"] is False
        assert snapshot["awaiting_enrollment"] is False
        assert snapshot["last_disconnect_reason"] is None


class TestConnect:
    """Test connection establishment."""

    @pytest.mark.asyncio
    async def test_connect_with_empty_store(self, connection_manager, fake_provider):
        """First connect starts a handshake with empty credentials."""
        result = await connection_manager.connect()

        assert result is True
        assert connection_manager.state == ConnectionState.CONNECTING
        assert connection_manager.is_ready() is False
        assert fake_provider.last_handle.credentials == {}
        assert fake_provider.last_handle.started is True

    @pytest.mark.asyncio
    async def test_connect_uses_stored_credentials(
        self, connection_manager, fake_provider, credential_store
    ):
        """Stored credentials are handed to the provider so enrollment is skipped."""
        credential_store.save({"creds": {"me": "5551234567"}})

        await connection_manager.connect()

        assert fake_provider.last_handle.credentials == {"creds": {"me": "5551234567"}}

    @pytest.mark.asyncio
    async def test_enrollment_then_open_becomes_ready(
        self, connection_manager, fake_provider, enrollment_renderer
    ):
        """Empty store -> connecting -> awaiting enrollment -> connected."""
        await connection_manager.connect()
        handle = fake_provider.last_handle

        await handle.emit(LifecycleEvent.enrollment_code("2@abcdef"))
        assert connection_manager.state == ConnectionState.AWAITING_ENROLLMENT
        assert connection_manager.enrollment_code == "2@abcdef"
        assert connection_manager.is_ready() is False
        enrollment_renderer.assert_called_once_with("2@abcdef")

        await handle.emit(LifecycleEvent.connection_open())
        assert connection_manager.state == ConnectionState.CONNECTED
        assert connection_manager.is_ready() is True
        assert connection_manager.enrollment_code is None

    @pytest.mark.asyncio
    async def test_rotated_enrollment_code_is_rendered_again(
        self, connection_manager, fake_provider, enrollment_renderer
    ):
        await connection_manager.connect()
        handle = fake_provider.last_handle

        await handle.emit(LifecycleEvent.enrollment_code("code-1"))
        await handle.emit(LifecycleEvent.enrollment_code("code-2"))

        assert connection_manager.state == ConnectionState.AWAITING_ENROLLMENT
        assert connection_manager.enrollment_code == "code-2"
        assert enrollment_renderer.call_count == 2

    @pytest.mark.asyncio
    async def test_renderer_failure_does_not_break_enrollment(
        self, connection_manager, fake_provider, enrollment_renderer
    ):
        enrollment_renderer.side_effect = RuntimeError("no terminal")
        await connection_manager.connect()

        await fake_provider.last_handle.emit(LifecycleEvent.enrollment_code("code"))

        assert connection_manager.state == ConnectionState.AWAITING_ENROLLMENT

    @pytest.mark.asyncio
    async def test_connect_without_provider(self, credential_store):
        """Without a provider connect fails and the manager stays disconnected."""
        manager = ConnectionManager(provider=None, credential_store=credential_store)

        assert await manager.connect() is False
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_provider_create_failure(
        self, connection_manager, fake_provider
    ):
        fake_provider.create_error = RuntimeError("bad credentials format")

        assert await connection_manager.connect() is False
        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.handle is None

    @pytest.mark.asyncio
    async def test_connect_store_failure(self, connection_manager, credential_store):
        with patch.object(
            credential_store, "load", side_effect=CredentialStoreError("locked")
        ):
            assert await connection_manager.connect() is False

        assert connection_manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_with_corrupt_credentials_fails(
        self, connection_manager, fake_provider, credential_store, auth_dir
    ):
        credential_store.save({"creds": {"id": 1}})
        (auth_dir / "creds.json").write_text("{truncated", encoding="utf-8")

        assert await connection_manager.connect() is False
        assert fake_provider.handles == []
        assert connection_manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_start_failure(self, connection_manager, fake_provider):
        original_create = fake_provider.create

        def create_failing(credentials):
            handle = original_create(credentials)
            handle.start_error = ConnectionError("handshake refused")
            return handle

        fake_provider.create = create_failing

        assert await connection_manager.connect() is False
        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.handle is None

    @pytest.mark.asyncio
    async def test_connect_replaces_existing_session(
        self, connection_manager, fake_provider
    ):
        """Only one handle is ever live."""
        first = await _connect_and_open(connection_manager, fake_provider)

        await connection_manager.connect()

        assert first.closed is True
        assert connection_manager.handle is fake_provider.last_handle
        assert connection_manager.state == ConnectionState.CONNECTING


class TestCredentialUpdates:
    """Test credential persistence on provider updates."""

    @pytest.mark.asyncio
    async def test_credentials_updated_is_persisted(
        self, connection_manager, fake_provider, credential_store, auth_dir
    ):
        await connection_manager.connect()
        state_before = connection_manager.state

        await fake_provider.last_handle.emit(
            LifecycleEvent.credentials_updated({"creds": {"id": 1}, "keys": ["k1"]})
        )

        assert connection_manager.state == state_before
        assert credential_store.load() == {"creds": {"id": 1}, "keys": ["k1"]}
        assert CredentialStore(auth_dir).load() == {"creds": {"id": 1}, "keys": ["k1"]}

    @pytest.mark.asyncio
    async def test_credentials_update_replaces_previous_blob(
        self, connection_manager, fake_provider, credential_store
    ):
        await connection_manager.connect()
        handle = fake_provider.last_handle

        await handle.emit(LifecycleEvent.credentials_updated({"creds": 1, "old": 2}))
        await handle.emit(LifecycleEvent.credentials_updated({"creds": 3}))

        assert credential_store.load() == {"creds": 3}

    @pytest.mark.asyncio
    async def test_credential_save_failure_is_not_raised(
        self, connection_manager, fake_provider, credential_store
    ):
        await connection_manager.connect()

        with patch.object(
            credential_store, "save", side_effect=CredentialStoreError("disk full")
        ):
            await fake_provider.last_handle.emit(
                LifecycleEvent.credentials_updated({"creds": 1})
            )

        assert connection_manager.state == ConnectionState.CONNECTING


class TestConnectionClosed:
    """Test retry policy after involuntary closures."""

    @pytest.mark.asyncio
    async def test_retryable_close_schedules_one_retry(
        self, connection_manager, fake_provider
    ):
        """Ready -> close(network error) -> not ready -> new connect after the delay."""
        handle = await _connect_and_open(connection_manager, fake_provider)

        await handle.emit(
            LifecycleEvent.connection_closed(
                DisconnectReason.CONNECTION_LOST, "network-error"
            )
        )

        assert connection_manager.is_ready() is False
        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.retry_pending is True
        assert connection_manager.last_disconnect_reason.status_code == 408

        await asyncio.sleep(RETRY_WAIT)

        assert len(fake_provider.handles) == 2
        assert connection_manager.state == ConnectionState.CONNECTING
        assert connection_manager.retry_pending is False

    @pytest.mark.asyncio
    async def test_close_without_status_code_is_retryable(
        self, connection_manager, fake_provider
    ):
        handle = await _connect_and_open(connection_manager, fake_provider)

        await handle.emit(LifecycleEvent.connection_closed(None, "socket hang up"))
        await asyncio.sleep(RETRY_WAIT)

        assert len(fake_provider.handles) == 2

    @pytest.mark.asyncio
    async def test_logged_out_close_does_not_retry(
        self, connection_manager, fake_provider, credential_store
    ):
        credential_store.save({"creds": "kept"})
        handle = await _connect_and_open(connection_manager, fake_provider)

        await handle.emit(
            LifecycleEvent.connection_closed(DisconnectReason.LOGGED_OUT, "logged out")
        )
        await asyncio.sleep(RETRY_WAIT)

        assert len(fake_provider.handles) == 1
        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.retry_pending is False
        assert connection_manager.last_disconnect_reason.is_logged_out is True
        assert credential_store.load() == {"creds": "kept"}

    @pytest.mark.asyncio
    async def test_close_while_awaiting_enrollment_retries(
        self, connection_manager, fake_provider
    ):
        await connection_manager.connect()
        handle = fake_provider.last_handle
        await handle.emit(LifecycleEvent.enrollment_code("code"))

        await handle.emit(
            LifecycleEvent.connection_closed(DisconnectReason.CONNECTION_CLOSED)
        )

        assert connection_manager.enrollment_code is None
        assert connection_manager.retry_pending is True

        await connection_manager.disconnect()

    @pytest.mark.asyncio
    async def test_duplicate_close_schedules_single_retry(
        self, connection_manager, fake_provider
    ):
        handle = await _connect_and_open(connection_manager, fake_provider)

        await handle.emit(LifecycleEvent.connection_closed(DisconnectReason.BAD_SESSION))
        await handle.emit(LifecycleEvent.connection_closed(DisconnectReason.BAD_SESSION))
        await asyncio.sleep(RETRY_WAIT)

        assert len(fake_provider.handles) == 2

    @pytest.mark.asyncio
    async def test_closed_handle_is_released_and_silenced(
        self, connection_manager, fake_provider, credential_store
    ):
        """Events from a handle the provider closed are no longer applied."""
        handle = await _connect_and_open(connection_manager, fake_provider)

        await handle.emit(
            LifecycleEvent.connection_closed(DisconnectReason.LOGGED_OUT, "logged out")
        )
        await handle.emit(LifecycleEvent.credentials_updated({"late": True}))
        await handle.emit(LifecycleEvent.connection_open())

        assert handle.closed is True
        assert credential_store.load() == {}
        assert connection_manager.is_ready() is False
        assert connection_manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_open_after_close_is_ignored(self, connection_manager, fake_provider):
        handle = await _connect_and_open(connection_manager, fake_provider)
        await connection_manager.disconnect()

        await handle.emit(LifecycleEvent.connection_open())

        assert connection_manager.is_ready() is False

    @pytest.mark.asyncio
    async def test_failed_retry_waits_for_explicit_reconnect(
        self, connection_manager, fake_provider
    ):
        handle = await _connect_and_open(connection_manager, fake_provider)
        fake_provider.create_error = RuntimeError("provider down")

        await handle.emit(
            LifecycleEvent.connection_closed(DisconnectReason.UNAVAILABLE_SERVICE)
        )
        await asyncio.sleep(RETRY_WAIT)

        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.retry_pending is False

    @pytest.mark.asyncio
    async def test_explicit_connect_cancels_pending_retry(
        self, connection_manager, fake_provider
    ):
        handle = await _connect_and_open(connection_manager, fake_provider)
        await handle.emit(
            LifecycleEvent.connection_closed(DisconnectReason.RESTART_REQUIRED)
        )

        await connection_manager.connect()
        await asyncio.sleep(RETRY_WAIT)

        assert len(fake_provider.handles) == 2
        assert connection_manager.retry_pending is False


class TestDisconnect:
    """Test explicit disconnects."""

    @pytest.mark.asyncio
    async def test_disconnect_closes_handle(
        self, connection_manager, fake_provider, credential_store
    ):
        credential_store.save({"creds": "kept"})
        handle = await _connect_and_open(connection_manager, fake_provider)

        await connection_manager.disconnect()

        assert handle.closed is True
        assert connection_manager.state == ConnectionState.DISCONNECTED
        assert connection_manager.handle is None
        assert connection_manager.is_ready() is False
        assert credential_store.load() == {"creds": "kept"}

    @pytest.mark.asyncio
    async def test_disconnect_twice_is_noop(self, connection_manager):
        await connection_manager.disconnect()
        await connection_manager.disconnect()

        assert connection_manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting(self, connection_manager, fake_provider):
        await connection_manager.connect()

        await connection_manager.disconnect()

        assert fake_provider.last_handle.closed is True
        assert connection_manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_retry(
        self, connection_manager, fake_provider
    ):
        handle = await _connect_and_open(connection_manager, fake_provider)
        await handle.emit(
            LifecycleEvent.connection_closed(DisconnectReason.CONNECTION_LOST)
        )
        assert connection_manager.retry_pending is True

        await connection_manager.disconnect()
        await asyncio.sleep(RETRY_WAIT)

        assert len(fake_provider.handles) == 1
        assert connection_manager.retry_pending is False
        assert connection_manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_handle_close_error_is_swallowed(
        self, connection_manager, fake_provider
    ):
        handle = await _connect_and_open(connection_manager, fake_provider)

        async def failing_close():
            raise ConnectionError("already gone")

        handle.close = failing_close

        await connection_manager.disconnect()

        assert connection_manager.state == ConnectionState.DISCONNECTED


class TestReconnect:
    """Test reconnect and stale event handling."""

    @pytest.mark.asyncio
    async def test_reconnect_starts_new_session(self, connection_manager, fake_provider):
        first = await _connect_and_open(connection_manager, fake_provider)

        result = await connection_manager.reconnect()

        assert result is True
        assert first.closed is True
        assert len(fake_provider.handles) == 2
        assert connection_manager.state == ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_events_from_replaced_session_are_ignored(
        self, connection_manager, fake_provider, credential_store
    ):
        first = await _connect_and_open(connection_manager, fake_provider)
        await connection_manager.reconnect()

        await first.emit(LifecycleEvent.connection_open())
        await first.emit(LifecycleEvent.credentials_updated({"stale": True}))
        await first.emit(
            LifecycleEvent.connection_closed(DisconnectReason.CONNECTION_LOST)
        )

        assert connection_manager.state == ConnectionState.CONNECTING
        assert connection_manager.is_ready() is False
        assert connection_manager.retry_pending is False
        assert credential_store.load() == {}

    @pytest.mark.asyncio
    async def test_new_session_becomes_ready(self, connection_manager, fake_provider):
        await _connect_and_open(connection_manager, fake_provider)
        await connection_manager.reconnect()

        await fake_provider.last_handle.emit(LifecycleEvent.connection_open())

        assert connection_manager.is_ready() is True
        assert connection_manager.snapshot()["generation"] == connection_manager.generation
