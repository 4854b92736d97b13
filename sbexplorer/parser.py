"""
Message Parsing

Normalizes ``azure.servicebus`` received messages into ``ParsedMessage``
records: bodies decoded to text where possible, byte keys turned into
strings and broker annotations kept as system properties.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from azure.servicebus import ServiceBusReceivedMessage
from azure.servicebus.amqp import AmqpMessageBodyType

from .models import LockedMessage, ParsedMessage


def decode_body(body: Any) -> Any:
    """Decode data-section bytes as UTF-8 text, leaving other values as-is."""
    if isinstance(body, (bytes, bytearray, memoryview)):
        raw = bytes(body)
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError:
            return raw
    return body


def message_body(message: ServiceBusReceivedMessage) -> Tuple[Any, Optional[bytes]]:
    """
    Return (decoded body, raw bytes).

    Data bodies arrive as an iterable of byte sections and are joined;
    value and sequence bodies have no raw bytes.
    """
    body = message.body
    if message.body_type == AmqpMessageBodyType.DATA:
        if isinstance(body, (bytes, bytearray)):
            raw = bytes(body)
        else:
            raw = b''.join(bytes(section) for section in body)
        return decode_body(raw), raw
    if message.body_type == AmqpMessageBodyType.SEQUENCE:
        return [list(section) for section in body], None
    return decode_body(body), None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    return str(value)


def _string_keys(mapping: Optional[Dict[Any, Any]]) -> Dict[str, Any]:
    return {_text(k): v for k, v in (mapping or {}).items()}


def _seconds(value: Optional[timedelta]) -> Optional[float]:
    return value.total_seconds() if value is not None else None


def _creation_time(message: ServiceBusReceivedMessage) -> Optional[datetime]:
    properties = message.raw_amqp_message.properties
    created = properties.creation_time if properties is not None else None
    if isinstance(created, datetime):
        return created
    if isinstance(created, (int, float)) and created > 0:
        return datetime.fromtimestamp(created / 1000.0, tz=timezone.utc)
    return None


def parse_message(message: ServiceBusReceivedMessage) -> ParsedMessage:
    """Normalize a peeked or received message."""
    body, raw_body = message_body(message)
    return ParsedMessage(
        message_id=_text(message.message_id),
        body=body,
        content_type=message.content_type,
        sequence_number=message.sequence_number,
        enqueued_time=message.enqueued_time_utc,
        delivery_count=message.delivery_count or 0,
        application_properties=_string_keys(message.application_properties),
        system_properties=_string_keys(message.raw_amqp_message.annotations),
        correlation_id=_text(message.correlation_id),
        session_id=message.session_id,
        subject=message.subject,
        reply_to=message.reply_to,
        to=message.to,
        partition_key=message.partition_key,
        scheduled_enqueue_time=message.scheduled_enqueue_time_utc,
        time_to_live=_seconds(message.time_to_live),
        expiry_time=message.expires_at_utc,
        creation_time=_creation_time(message),
        dead_letter_reason=message.dead_letter_reason,
        dead_letter_error_description=message.dead_letter_error_description,
        raw_body=raw_body,
    )


def parse_locked_message(message: ServiceBusReceivedMessage) -> LockedMessage:
    """Normalize a message received under a peek-lock."""
    parsed = parse_message(message)
    return LockedMessage(
        **parsed.model_dump(exclude={'locked_until'}),
        locked_until=message.locked_until_utc,
        lock_token=str(message.lock_token),
    )
