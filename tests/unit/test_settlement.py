"""
Unit Tests for the Settlement Engine

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import pytest
from azure.servicebus import exceptions as sb_errors

from sdk_fakes import locked_message, mock_connection, mock_receiver
from sbexplorer.constants import (
    ERROR_CONNECTION_CLOSED,
    ERROR_LOCK_LOST,
    ERROR_NOT_FOUND_OR_EXPIRED,
)
from sbexplorer.exceptions import SendError
from sbexplorer.metrics import ClientMetrics
from sbexplorer.models import LockedMessage
from sbexplorer.registry import LockedMessageHandle, LockRegistry
from sbexplorer.settlement import SettlementEngine, settlement_error


@pytest.fixture
def receiver():
    return mock_receiver()


@pytest.fixture
def connection(receiver):
    return mock_connection(receiver)


@pytest.fixture
def registry():
    return LockRegistry()


@pytest.fixture
def engine(registry):
    return SettlementEngine(registry, metrics=ClientMetrics())


def register(registry, token, receiver, connection):
    handle = LockedMessageHandle(
        lock_token=token,
        received=locked_message(1),
        receiver=receiver,
        connection=connection,
        message=LockedMessage(body="x", lock_token=token),
        entity_path="orders",
    )
    registry.register(handle)
    return handle


class TestSettlementError:
    """Tests for per-token failure text."""

    def test_lock_lost(self):
        """Test lost locks read as lock lost."""
        assert settlement_error(sb_errors.MessageLockLostError(message="expired")) == ERROR_LOCK_LOST

    def test_connection_lost(self):
        """Test SDK connection failures read as connection closed."""
        error = sb_errors.ServiceBusConnectionError(message="reset")
        assert settlement_error(error) == ERROR_CONNECTION_CLOSED

    def test_explorer_error_uses_message(self):
        """Test explorer errors contribute their message."""
        assert settlement_error(SendError("nope")) == "Send failed: nope"

    def test_other_errors_use_text(self):
        """Test anything else contributes its text."""
        assert settlement_error(sb_errors.ServiceBusError(message="busy")) == "busy"


class TestSettlementEngine:
    """Tests for settling registered handles."""

    @pytest.mark.asyncio
    async def test_complete_settles_and_releases(self, engine, registry, receiver, connection):
        """Test complete settles through the locking receiver and closes unused resources."""
        handle = register(registry, "t1", receiver, connection)

        result = await engine.complete(["t1"])

        assert result.success_count == 1
        receiver.complete_message.assert_awaited_once_with(handle.received)
        connection.release.assert_awaited_once_with(receiver)
        connection.close.assert_awaited_once()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_abandon(self, engine, registry, receiver, connection):
        """Test abandon goes through the SDK abandon call."""
        handle = register(registry, "t1", receiver, connection)

        await engine.abandon(["t1"])

        receiver.abandon_message.assert_awaited_once_with(handle.received)

    @pytest.mark.asyncio
    async def test_dead_letter_passes_reason(self, engine, registry, receiver, connection):
        """Test dead-letter carries reason and description."""
        handle = register(registry, "t1", receiver, connection)

        await engine.dead_letter(["t1"], reason="Poison", description="bad payload")

        receiver.dead_letter_message.assert_awaited_once_with(
            handle.received, reason="Poison", error_description="bad payload"
        )

    @pytest.mark.asyncio
    async def test_shared_connection_kept_until_last(self, engine, registry, receiver, connection):
        """Test the connection stays open while another handle uses it."""
        register(registry, "t1", receiver, connection)
        register(registry, "t2", receiver, connection)

        await engine.complete(["t1"])
        connection.release.assert_not_awaited()
        connection.close.assert_not_awaited()

        await engine.complete(["t2"])
        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_token(self, engine):
        """Test unregistered tokens fail per item."""
        result = await engine.complete(["missing"])

        assert result.failure_count == 1
        assert result.errors[0].error == ERROR_NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_closed_connection(self, engine, registry, receiver, connection):
        """Test a closed connection fails without a settle call."""
        register(registry, "t1", receiver, connection)
        connection.is_open = False

        result = await engine.complete(["t1"])

        assert result.errors[0].error == ERROR_CONNECTION_CLOSED
        receiver.complete_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failures_are_per_token(self, engine, registry, receiver, connection):
        """Test one failing token does not stop the others."""
        register(registry, "t1", receiver, connection)
        register(registry, "t2", receiver, connection)
        receiver.complete_message.side_effect = [
            sb_errors.MessageLockLostError(message="expired"),
            None,
        ]

        result = await engine.complete(["t1", "t2"])

        assert result.success_count == 1
        assert result.failure_count == 1
        assert result.errors[0].id == "t1"
        assert result.errors[0].error == ERROR_LOCK_LOST
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_release_on_separate_receivers(self, engine, registry, connection):
        """Test each receiver is released once its own handles are settled."""
        first, second = mock_receiver(), mock_receiver()
        register(registry, "t1", first, connection)
        register(registry, "t2", second, connection)

        await engine.abandon(["t1"])

        connection.release.assert_awaited_once_with(first)
        connection.close.assert_not_awaited()
