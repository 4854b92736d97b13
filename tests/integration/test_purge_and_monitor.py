"""
Integration Tests for Purge and Monitor

Bulk deletion through server-side batch delete and the parallel receiver
fallback, plus continuous monitoring with reconnects.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio

import pytest

from azure.servicebus import exceptions as sb_errors

from sbexplorer.exceptions import AuthError, EntityNotFoundError, PeekError, ServiceBusConnectionError
from sbexplorer.monitor import MonitorState
from sbexplorer.purge import STRATEGY_BATCH_DELETE, STRATEGY_RECEIVE
from sbexplorer.client import ServiceBusExplorerClient
from sbexplorer.metrics import ClientMetrics


async def wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestPurge:
    """Tests for purging entities."""

    @pytest.mark.asyncio
    async def test_batch_delete_purge(self, broker, client):
        """Test the fast path deletes in server-side batches."""
        broker.seed("orders", 25)
        progress = []

        operation = await client.purge("orders", progress.append)
        deleted = await operation

        assert deleted == 25
        assert operation.strategy == STRATEGY_BATCH_DELETE
        assert progress == [10, 20, 25]
        assert broker.messages("orders") == []
        assert broker.operations.count("delete_messages") == 3

    @pytest.mark.asyncio
    async def test_fallback_to_receivers(self, broker, client):
        """Test purge falls back to receive-and-delete workers when batch delete is refused."""
        broker.batch_delete_supported = False
        broker.seed("orders", 23)
        progress = []

        operation = await client.purge("orders", progress.append)
        deleted = await operation

        assert deleted == 23
        assert operation.strategy == STRATEGY_RECEIVE
        assert broker.messages("orders") == []
        assert progress == sorted(progress)
        assert progress[-1] == 23

    @pytest.mark.asyncio
    async def test_purge_empty_entity(self, broker, client):
        """Test purging an empty entity finishes with zero."""
        operation = await client.purge("orders")
        assert await operation == 0
        assert operation.deleted_count == 0

    @pytest.mark.asyncio
    async def test_purge_dead_letter_queue(self, broker, client):
        """Test the dead-letter sub-queue can be purged on its own."""
        broker.seed("orders", 2)
        broker.seed("orders/$DeadLetterQueue", 4, prefix="dead")

        deleted = await (await client.purge("orders/$DeadLetterQueue"))

        assert deleted == 4
        assert len(broker.messages("orders")) == 2

    @pytest.mark.asyncio
    async def test_purge_unknown_entity_raises(self, broker, client):
        """Test purging a missing entity raises EntityNotFoundError."""
        operation = await client.purge("missing")
        with pytest.raises(EntityNotFoundError):
            await operation
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_fallback_unknown_entity_raises(self, broker, client):
        """Test the fallback workers also report a missing entity."""
        broker.batch_delete_supported = False
        operation = await client.purge("missing")
        with pytest.raises(EntityNotFoundError):
            await operation

    @pytest.mark.asyncio
    async def test_unanswered_batch_delete_falls_back(self, broker, client):
        """Test a batch delete that times out hands over to the receivers."""
        broker.hanging_operations.add("delete_messages")
        broker.seed("orders", 4)

        operation = await client.purge("orders")

        assert await operation == 4
        assert operation.strategy == STRATEGY_RECEIVE

    @pytest.mark.asyncio
    async def test_finished_purge_is_released_by_client(self, broker, client):
        """Test the client forgets a purge once it has finished."""
        broker.seed("orders", 3)

        operation = await client.purge("orders")
        await operation
        await asyncio.sleep(0)

        assert operation not in client._purges

    @pytest.mark.asyncio
    async def test_stopped_purge_keeps_count(self, broker, client):
        """Test stop returns the count reached and the purge finishes."""
        broker.seed("orders", 5)
        operation = await client.purge("orders")
        operation.stop()

        deleted = await operation

        assert deleted == operation.get_count()
        assert operation.stop_requested


class TestMonitor:
    """Tests for continuous monitoring."""

    @pytest.mark.asyncio
    async def test_monitor_emits_only_new_messages(self, broker, client):
        """Test messages present at start are skipped and new ones emitted once."""
        broker.seed("orders", 2)
        seen = []

        monitor = await client.monitor("orders", seen.append)
        assert monitor.watermark == 2

        broker.seed("orders", 3, prefix="new")
        await wait_until(lambda: len(seen) == 3)
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert [m.body for m in seen] == ["new-0", "new-1", "new-2"]
        assert monitor.state == MonitorState.STOPPED
        assert len(broker.messages("orders")) == 5

    @pytest.mark.asyncio
    async def test_monitor_keeps_one_connection(self, broker, client):
        """Test polls reuse the monitor's connection."""
        seen = []
        monitor = await client.monitor("orders", seen.append)
        await asyncio.sleep(0.2)

        assert broker.clients_opened == 1
        assert broker.operations.count("peek") > 2
        await monitor.stop()
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_monitor_reconnects_after_connection_loss(self, broker, client):
        """Test the monitor rebuilds its connection after the broker drops it."""
        seen = []
        monitor = await client.monitor("orders", seen.append)

        broker.drop_connections()
        broker.seed("orders", 1, prefix="after-drop")
        await wait_until(lambda: len(seen) == 1)
        await monitor.stop()

        assert seen[0].body == "after-drop-0"
        assert broker.clients_opened >= 2
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_monitor_reports_errors_and_recovers(self, broker, client):
        """Test poll errors reach the error callback and polling resumes."""
        seen = []
        errors = []
        monitor = await client.monitor("orders", seen.append, errors.append)

        broker.failing_operations["peek"] = sb_errors.ServiceBusError(message="server busy")
        await wait_until(lambda: len(errors) >= 1)
        del broker.failing_operations["peek"]
        broker.seed("orders", 1)
        await wait_until(lambda: len(seen) == 1)
        await monitor.stop()

        assert isinstance(errors[0], PeekError)

    @pytest.mark.asyncio
    async def test_monitor_start_failure_invokes_error_callback(self, broker, config):
        """Test a failed start raises and reports through the error callback."""
        errors = []
        client = ServiceBusExplorerClient(
            "contoso", "wrong-token", config=config,
            client_factory=broker.client_factory, metrics=ClientMetrics(),
        )
        async with client:
            with pytest.raises(AuthError):
                await client.monitor("orders", lambda m: None, errors.append)

        assert len(errors) == 1
        assert isinstance(errors[0], AuthError)

    @pytest.mark.asyncio
    async def test_client_close_stops_monitors(self, broker, client):
        """Test closing the client stops running monitors."""
        monitor = await client.monitor("orders", lambda m: None)
        await client.close()

        assert monitor.state == MonitorState.STOPPED
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_raising_error_callback_does_not_kill_monitor(self, broker, client):
        """Test an error callback that raises is logged and polling continues."""
        seen = []
        errors = []

        def on_error(error):
            errors.append(error)
            raise RuntimeError("callback failed")

        monitor = await client.monitor("orders", seen.append, on_error)
        broker.fail_next["peek"] = sb_errors.ServiceBusConnectionError(message="connection reset")
        await wait_until(lambda: len(errors) == 1)
        broker.seed("orders", 1, prefix="recovered")
        await wait_until(lambda: len(seen) == 1)

        assert monitor.is_running
        assert isinstance(errors[0], ServiceBusConnectionError)
        assert seen[0].body == "recovered-0"

        await client.close()
        assert monitor.state == MonitorState.STOPPED
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_stopped_monitor_is_released_by_client(self, broker, client):
        """Test the client forgets a monitor once it is stopped."""
        monitor = await client.monitor("orders", lambda m: None)
        assert monitor in client._monitors

        await monitor.stop()

        assert monitor not in client._monitors

    @pytest.mark.asyncio
    async def test_failed_start_is_not_kept_by_client(self, broker, client):
        """Test a monitor that failed to start is not tracked."""
        with pytest.raises(EntityNotFoundError):
            await client.monitor("missing", lambda m: None)
        assert client._monitors == set()
