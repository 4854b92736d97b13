"""
Integration Tests for Message Search

Background scans over queues, subscriptions and dead-letter sub-queues
against the in-process Service Bus.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio

import pytest
from azure.servicebus import exceptions as sb_errors

from sbexplorer.exceptions import EntityNotFoundError, PeekError
from sbexplorer.models import OutgoingMessage


class TestSearch:
    """Tests for searching messages."""

    @pytest.mark.asyncio
    async def test_search_body_across_pages(self, broker, client):
        """Test matches are collected over several peek pages."""
        broker.seed("orders", 10)
        progress = []

        operation = await client.search("orders", body="MESSAGE-1",
                                        on_progress=lambda *args: progress.append(args))
        result = await operation

        assert result.scanned_count == 10
        assert result.matching_sequence_numbers == [2]
        assert result.match_count == 1
        assert result.stopped is False
        assert progress == [(4, 1, [2]), (8, 1, []), (10, 1, [])]
        assert len(broker.messages("orders")) == 10
        assert all(m.lock_token is None for m in broker.messages("orders"))
        assert broker.clients_opened == 1
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_search_subject_and_message_id(self, broker, client):
        """Test every given field must match."""
        await client.send_batch("orders", [
            OutgoingMessage(body="a", message_id="order-1", subject="refund"),
            OutgoingMessage(body="b", message_id="order-2", subject="refund"),
            OutgoingMessage(body="c", message_id="order-3", subject="payment"),
        ])

        result = await (await client.search("orders", message_id="order", subject="REFUND"))

        assert result.matching_sequence_numbers == [1, 2]

    @pytest.mark.asyncio
    async def test_search_json_body(self, client):
        """Test JSON bodies are matched on their text."""
        await client.send("orders", {"customer": "customer-42", "total": 5})
        await client.send("orders", {"customer": "customer-7", "total": 9})

        result = await (await client.search("orders", body='"customer-42"'))

        assert result.matching_sequence_numbers == [1]

    @pytest.mark.asyncio
    async def test_match_cap_ends_scan(self, broker, client):
        """Test the scan ends once the match cap is reached."""
        broker.seed("orders", 12)

        result = await (await client.search("orders", body="message", max_matches=5))

        assert result.match_count == 5
        assert result.matching_sequence_numbers == [1, 2, 3, 4, 5]
        assert result.scanned_count == 8

    @pytest.mark.asyncio
    async def test_scan_limit_ends_scan(self, broker, client):
        """Test no more than max_messages messages are scanned."""
        broker.seed("orders", 12)

        result = await (await client.search("orders", body="message-11", max_messages=6))

        assert result.scanned_count == 6
        assert result.matching_sequence_numbers == []
        assert broker.operations.count("peek") == 2

    @pytest.mark.asyncio
    async def test_search_dead_letter_queue(self, broker, client):
        """Test the dead-letter sub-queue is searched on its own."""
        broker.seed("orders", 3)
        broker.seed("orders/$DeadLetterQueue", 2, prefix="dead")

        result = await (await client.search("orders/$DeadLetterQueue", body="dead-1"))

        assert result.scanned_count == 2
        assert result.matching_sequence_numbers == [5]

    @pytest.mark.asyncio
    async def test_search_subscription(self, broker, client):
        """Test a topic subscription can be searched."""
        broker.seed("events/subscriptions/audit", 3, prefix="audit")

        result = await (await client.search("events/subscriptions/audit", body="audit-2"))

        assert result.matching_sequence_numbers == [3]

    @pytest.mark.asyncio
    async def test_stop_ends_scan_after_current_page(self, broker, client):
        """Test stop ends the scan with the matches found so far."""
        broker.seed("orders", 20)

        def progress(scanned, matches, new_matches):
            operation.stop()

        operation = await client.search("orders", body="message", on_progress=progress)
        result = await operation

        assert result.stopped is True
        assert result.scanned_count == 4
        assert result.matching_sequence_numbers == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_search_unknown_entity_raises(self, broker, client):
        """Test searching a missing entity raises EntityNotFoundError."""
        operation = await client.search("missing", body="x")
        with pytest.raises(EntityNotFoundError):
            await operation
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_peek_failure_ends_search(self, broker, client):
        """Test a rejected peek ends the scan with PeekError."""
        broker.seed("orders", 6)
        broker.fail_next["peek"] = sb_errors.ServiceBusError(message="server busy")

        operation = await client.search("orders", body="message")
        with pytest.raises(PeekError):
            await operation

    @pytest.mark.asyncio
    async def test_finished_search_is_released_by_client(self, broker, client):
        """Test the client forgets a search once it has finished."""
        broker.seed("orders", 2)

        operation = await client.search("orders", body="message")
        await operation
        await asyncio.sleep(0)

        assert operation not in client._searches

    @pytest.mark.asyncio
    async def test_close_stops_running_search(self, broker, client):
        """Test closing the client stops a running search."""
        broker.seed("orders", 8)
        broker.hanging_operations.add("peek")

        operation = await client.search("orders", body="message")
        await asyncio.sleep(0.05)
        broker.hanging_operations.clear()
        await client.close()

        assert not operation.is_running
        assert broker.open_clients == []

    @pytest.mark.asyncio
    async def test_invalid_limits_rejected(self, client):
        """Test a cap below one is refused before any connection is made."""
        with pytest.raises(ValueError):
            await client.search("orders", body="x", max_matches=0)
