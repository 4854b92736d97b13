"""
Unit Tests for the Message Sender

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.servicebus import exceptions as sb_errors

from sdk_fakes import mock_connection
from sbexplorer.config import ClientConfig
from sbexplorer.exceptions import (
    AuthError,
    SendError,
    ServiceBusConnectionError,
    TimeoutError as ServiceBusTimeoutError,
)
from sbexplorer.models import EntityDescriptor, OutgoingMessage
from sbexplorer.sender import MessageSender, build_message, encode_body


ORDERS = EntityDescriptor(namespace="contoso", queue="orders")


@pytest.fixture
def sdk_sender():
    sender = MagicMock()
    sender.send_messages = AsyncMock()
    sender.close = AsyncMock()
    return sender


@pytest.fixture
def connection(sdk_sender):
    connection = mock_connection(sender=sdk_sender)
    connection.config = ClientConfig(timeouts={"send": 0.1})
    return connection


def body_bytes(message):
    return b"".join(message.body)


class TestEncodeBody:
    """Tests for body normalization."""

    def test_string(self):
        """Test strings are UTF-8 text."""
        assert encode_body("héllo", None) == ("héllo".encode("utf-8"), "text/plain; charset=utf-8")

    def test_bytes_keep_content_type(self):
        """Test bytes are sent unchanged with an explicit content type."""
        assert encode_body(b"\x00\x01", "application/octet-stream") == (
            b"\x00\x01", "application/octet-stream")

    def test_json(self):
        """Test other values are serialized as JSON."""
        assert encode_body({"a": [1, 2]}, None) == (b'{"a": [1, 2]}', "application/json; charset=utf-8")

    def test_none(self):
        """Test a missing body is sent empty."""
        assert encode_body(None, None) == (b"", "text/plain; charset=utf-8")


class TestBuildMessage:
    """Tests for mapping outgoing messages onto SDK messages."""

    def test_properties(self):
        """Test message properties and TTL are carried over."""
        message = build_message(OutgoingMessage(
            body="hi",
            message_id="m-1",
            subject="order",
            correlation_id="c-1",
            time_to_live=30,
            application_properties={"region": "eu"},
        ))

        assert body_bytes(message) == b"hi"
        assert message.message_id == "m-1"
        assert message.subject == "order"
        assert message.correlation_id == "c-1"
        assert message.content_type == "text/plain; charset=utf-8"
        assert message.time_to_live == timedelta(seconds=30)
        assert message.application_properties == {"region": "eu"}

    def test_generated_message_id(self):
        """Test a message id is generated when omitted."""
        message = build_message(OutgoingMessage(body="hi"))
        assert uuid.UUID(message.message_id)

    def test_naive_schedule_time_is_utc(self):
        """Test naive schedule times are taken as UTC."""
        message = build_message(OutgoingMessage(
            body="later", scheduled_enqueue_time=datetime(2030, 1, 1, 8, 0)))
        assert message.scheduled_enqueue_time_utc == datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)


class TestMessageSender:
    """Tests for sending through an SDK sender."""

    @pytest.mark.asyncio
    async def test_send_returns_message_id(self, connection, sdk_sender):
        """Test a sent message returns its id."""
        async with MessageSender(connection, ORDERS) as sender:
            message_id = await sender.send(OutgoingMessage(body="x", message_id="m-1"))

        assert message_id == "m-1"
        sent = sdk_sender.send_messages.call_args.args[0]
        assert body_bytes(sent) == b"x"
        connection.sender.assert_called_once_with(ORDERS)
        connection.release.assert_awaited_once_with(sdk_sender)

    def test_subscription_sends_to_topic_path(self, connection):
        """Test the send path of a subscription is its topic."""
        entity = EntityDescriptor(namespace="contoso", topic="events", subscription="audit")
        assert MessageSender(connection, entity).entity_path == "events"

    @pytest.mark.asyncio
    async def test_open_requires_connection(self, connection):
        """Test a closed connection is refused."""
        connection.is_open = False
        with pytest.raises(ServiceBusConnectionError):
            await MessageSender(connection, ORDERS).open()

    @pytest.mark.asyncio
    async def test_send_before_open(self, connection):
        """Test sending on an unopened sender fails."""
        with pytest.raises(SendError):
            await MessageSender(connection, ORDERS).send(OutgoingMessage(body="x"))

    @pytest.mark.asyncio
    async def test_rejection_raises_send_error(self, connection, sdk_sender):
        """Test broker rejections become SendError."""
        sdk_sender.send_messages.side_effect = sb_errors.ServiceBusError(message="too big")

        async with MessageSender(connection, ORDERS) as sender:
            with pytest.raises(SendError) as exc_info:
                await sender.send(OutgoingMessage(body="x"))

        assert exc_info.value.details["entity_path"] == "orders"

    @pytest.mark.asyncio
    async def test_unauthorized_raises_auth_error(self, connection, sdk_sender):
        """Test a missing Send claim surfaces as AuthError."""
        sdk_sender.send_messages.side_effect = sb_errors.ServiceBusAuthorizationError(message="no claim")

        async with MessageSender(connection, ORDERS) as sender:
            with pytest.raises(AuthError) as exc_info:
                await sender.send(OutgoingMessage(body="x"))

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_send_timeout(self, connection, sdk_sender):
        """Test an unacknowledged send is bounded by the send timeout."""
        async def hang(message):
            await asyncio.sleep(10)

        sdk_sender.send_messages.side_effect = hang

        async with MessageSender(connection, ORDERS) as sender:
            with pytest.raises(ServiceBusTimeoutError):
                await sender.send(OutgoingMessage(body="x"))

    @pytest.mark.asyncio
    async def test_send_batch_reports_each_message(self, connection, sdk_sender):
        """Test per-message failures are collected while the rest are sent."""
        sdk_sender.send_messages.side_effect = [None, sb_errors.ServiceBusError(message="rejected"), None]

        async with MessageSender(connection, ORDERS) as sender:
            result = await sender.send_batch([
                OutgoingMessage(body="a"),
                OutgoingMessage(body="b", message_id="m-b"),
                OutgoingMessage(body="c"),
            ])

        assert result.success_count == 2
        assert result.failure_count == 1
        assert result.errors[0].id == "m-b"

    @pytest.mark.asyncio
    async def test_send_batch_stops_on_connection_loss(self, connection, sdk_sender):
        """Test a connection failure ends the batch with an error."""
        sdk_sender.send_messages.side_effect = sb_errors.ServiceBusConnectionError(message="reset")

        async with MessageSender(connection, ORDERS) as sender:
            with pytest.raises(ServiceBusConnectionError):
                await sender.send_batch([OutgoingMessage(body="a"), OutgoingMessage(body="b")])

        assert sdk_sender.send_messages.await_count == 1
