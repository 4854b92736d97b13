"""
Message Sender

Sends messages to a queue or topic through an ``azure.servicebus`` sender
and waits for the broker to accept each one.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import json
import uuid
from datetime import timedelta, timezone
from typing import Any, Iterable, Optional

from azure.servicebus import ServiceBusMessage
from azure.servicebus.aio import ServiceBusSender

from .config import ClientConfig
from .connection import ServiceBusConnection
from .constants import CONTENT_TYPE_JSON, CONTENT_TYPE_TEXT
from .exceptions import SendError, ServiceBusConnectionError, translate_errors
from .logging_utils import StructuredLogger
from .models import BatchOperationResult, EntityDescriptor, OutgoingMessage
from .resilience import bounded


logger = StructuredLogger('sbexplorer.sender')


def encode_body(body: Any, content_type: Optional[str]) -> tuple[bytes, str]:
    """
    Normalize a body to UTF-8 bytes and pick its content type.

    Strings and bytes are sent as-is; anything else is JSON-serialized.
    """
    if body is None:
        return b"", content_type or CONTENT_TYPE_TEXT
    if isinstance(body, str):
        return body.encode('utf-8'), content_type or CONTENT_TYPE_TEXT
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body), content_type or CONTENT_TYPE_TEXT
    return json.dumps(body, default=str).encode('utf-8'), content_type or CONTENT_TYPE_JSON


def build_message(outgoing: OutgoingMessage) -> ServiceBusMessage:
    """Map an OutgoingMessage onto an SDK message with a single data body."""
    payload, content_type = encode_body(outgoing.body, outgoing.content_type)

    scheduled = outgoing.scheduled_enqueue_time
    if scheduled is not None and scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)

    ttl = None
    if outgoing.time_to_live is not None:
        ttl = timedelta(seconds=outgoing.time_to_live)

    return ServiceBusMessage(
        payload,
        message_id=outgoing.message_id or str(uuid.uuid4()),
        content_type=content_type,
        correlation_id=outgoing.correlation_id,
        subject=outgoing.subject,
        reply_to=outgoing.reply_to,
        to=outgoing.to,
        session_id=outgoing.session_id,
        partition_key=outgoing.partition_key,
        time_to_live=ttl,
        scheduled_enqueue_time_utc=scheduled,
        application_properties=dict(outgoing.application_properties) or None,
    )


class MessageSender:
    """Sender on one entity of an open connection."""

    def __init__(self, connection: ServiceBusConnection, entity: EntityDescriptor,
                 config: Optional[ClientConfig] = None):
        self.connection = connection
        self.entity = entity
        self.entity_path = entity.send_path
        self.config = config or connection.config
        self._sender: Optional[ServiceBusSender] = None

    async def open(self) -> None:
        """Create the sender; the SDK attaches it on the first send."""
        if not self.connection.is_open:
            raise ServiceBusConnectionError(reason="not connected", host=self.connection.host)
        self._sender = self.connection.sender(self.entity)

    async def close(self) -> None:
        if self._sender is not None:
            sender, self._sender = self._sender, None
            await self.connection.release(sender)

    async def __aenter__(self) -> "MessageSender":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def send(self, message: OutgoingMessage) -> str:
        """
        Send one message and wait for the broker to accept it.

        Returns:
            The message id that was sent

        Raises:
            SendError: the broker rejected or did not accept the message
            TimeoutError: no outcome within the send timeout
        """
        if self._sender is None:
            raise SendError("sender not open", entity_path=self.entity_path)
        sb_message = build_message(message)
        message_id = sb_message.message_id

        with translate_errors("send", self.entity_path, self.connection.host,
                              lambda e: SendError(str(e), entity_path=self.entity_path)):
            await bounded(
                self._sender.send_messages(sb_message),
                self.config.timeouts.send,
                "send",
            )
        logger.debug("Message sent", entity_path=self.entity_path, message_id=message_id)
        return message_id

    async def send_batch(self, messages: Iterable[OutgoingMessage]) -> BatchOperationResult:
        """
        Send messages one after another on this sender.

        Per-message send failures are reported in the result; a connection
        or authorization failure stops the batch and is raised.
        """
        result = BatchOperationResult()
        for index, message in enumerate(messages):
            try:
                await self.send(message)
            except SendError as e:
                result.add_failure(message.message_id or index, e.message)
                continue
            result.add_success()
        return result
