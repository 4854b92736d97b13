"""
Service Bus Explorer Models

Pydantic models for entity addressing, parsed messages, lock results,
outgoing messages and batch operation results.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import base64
import json
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import DEAD_LETTER_SUFFIX, SERVICEBUS_HOST_SUFFIX, SUBSCRIPTIONS_SEGMENT


class EntityNameValidator:
    """
    Validates Service Bus entity names according to Azure rules:
    - 1-260 characters (subscriptions 1-50)
    - Alphanumeric characters, hyphens (-), underscores (_), periods (.)
      and forward slashes (/) for queue/topic path segments
    - Must start and end with alphanumeric character
    """

    _PATTERN = re.compile(r'^[a-zA-Z0-9\-_./]+$')

    @staticmethod
    def validate(name: str, max_length: int = 260) -> tuple[bool, Optional[str]]:
        """
        Validate an entity name.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Entity name cannot be empty"

        if len(name) > max_length:
            return False, f"Entity name must be 1-{max_length} characters, got {len(name)}"

        if not name[0].isalnum() or not name[-1].isalnum():
            return False, "Entity name must start and end with alphanumeric character"

        if not EntityNameValidator._PATTERN.match(name):
            return False, "Entity name can only contain alphanumeric, hyphens, underscores, periods and slashes"

        return True, None


def namespace_host(namespace: str) -> str:
    """Expand a short namespace name to its fully-qualified host."""
    namespace = namespace.strip().rstrip('/')
    if namespace.startswith('sb://'):
        namespace = namespace[len('sb://'):]
    if '.' in namespace:
        return namespace
    return f"{namespace}{SERVICEBUS_HOST_SUFFIX}"


class EntityDescriptor(BaseModel):
    """
    Addressing for a queue, topic or topic subscription.

    ``entity_path`` yields ``<queue>``, ``<topic>`` or
    ``<topic>/subscriptions/<subscription>``, with ``/$DeadLetterQueue``
    appended when ``dead_letter`` is set.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    namespace: str
    queue: Optional[str] = None
    topic: Optional[str] = None
    subscription: Optional[str] = None
    dead_letter: bool = False

    @field_validator('queue', 'topic')
    @classmethod
    def validate_entity_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            is_valid, error = EntityNameValidator.validate(v)
            if not is_valid:
                raise ValueError(error)
        return v

    @field_validator('subscription')
    @classmethod
    def validate_subscription_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            is_valid, error = EntityNameValidator.validate(v, max_length=50)
            if not is_valid:
                raise ValueError(error)
            if '/' in v:
                raise ValueError("Subscription name cannot contain '/'")
        return v

    @model_validator(mode='after')
    def validate_target(self) -> 'EntityDescriptor':
        if bool(self.queue) == bool(self.topic):
            raise ValueError("Exactly one of queue or topic must be given")
        if self.subscription and not self.topic:
            raise ValueError("A subscription requires a topic")
        if self.dead_letter and self.topic and not self.subscription:
            raise ValueError("Topics have no dead-letter queue; name a subscription")
        return self

    @property
    def host(self) -> str:
        return namespace_host(self.namespace)

    @property
    def base_path(self) -> str:
        """Entity path without the dead-letter suffix."""
        if self.queue:
            return self.queue
        if self.subscription:
            return f"{self.topic}{SUBSCRIPTIONS_SEGMENT}{self.subscription}"
        return self.topic

    @property
    def entity_path(self) -> str:
        if self.dead_letter:
            return f"{self.base_path}{DEAD_LETTER_SUFFIX}"
        return self.base_path

    @property
    def send_path(self) -> str:
        """Address messages are sent to (queue or topic)."""
        return self.queue or self.topic

    @classmethod
    def from_path(cls, namespace: str, path: str) -> 'EntityDescriptor':
        """
        Parse ``<queue>``, ``<topic>`` or ``<topic>/subscriptions/<sub>``,
        optionally suffixed with ``/$DeadLetterQueue``.
        """
        path = path.strip().strip('/')
        dead_letter = path.endswith(DEAD_LETTER_SUFFIX)
        if dead_letter:
            path = path[:-len(DEAD_LETTER_SUFFIX)]
        if SUBSCRIPTIONS_SEGMENT in path:
            topic, subscription = path.split(SUBSCRIPTIONS_SEGMENT, 1)
            return cls(namespace=namespace, topic=topic, subscription=subscription,
                       dead_letter=dead_letter)
        return cls(namespace=namespace, queue=path, dead_letter=dead_letter)

    def as_dead_letter(self) -> 'EntityDescriptor':
        return self.model_copy(update={'dead_letter': True})

    def as_main(self) -> 'EntityDescriptor':
        return self.model_copy(update={'dead_letter': False})

    def __str__(self) -> str:
        return f"{self.host}/{self.entity_path}"


def _jsonable(value: Any) -> Any:
    """Convert AMQP-decoded values into JSON-compatible ones."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode('utf-8')
        except UnicodeDecodeError:
            return base64.b64encode(bytes(value)).decode('ascii')
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class ParsedMessage(BaseModel):
    """Normalized decode of a broker message."""
    model_config = ConfigDict(extra='forbid')

    message_id: Optional[str] = None
    body: Any = None
    content_type: Optional[str] = None
    sequence_number: Optional[int] = None
    enqueued_time: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    delivery_count: int = 0
    application_properties: Dict[str, Any] = Field(default_factory=dict)
    system_properties: Dict[str, Any] = Field(default_factory=dict)

    correlation_id: Optional[str] = None
    session_id: Optional[str] = None
    subject: Optional[str] = None
    reply_to: Optional[str] = None
    to: Optional[str] = None
    partition_key: Optional[str] = None
    scheduled_enqueue_time: Optional[datetime] = None
    time_to_live: Optional[float] = None
    expiry_time: Optional[datetime] = None
    creation_time: Optional[datetime] = None
    dead_letter_reason: Optional[str] = None
    dead_letter_error_description: Optional[str] = None
    raw_body: Optional[bytes] = Field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a camelCase, JSON-compatible dictionary."""
        return {
            "messageId": self.message_id,
            "body": _jsonable(self.body),
            "contentType": self.content_type,
            "sequenceNumber": self.sequence_number,
            "enqueuedTime": _jsonable(self.enqueued_time),
            "lockedUntil": _jsonable(self.locked_until),
            "deliveryCount": self.delivery_count,
            "correlationId": self.correlation_id,
            "sessionId": self.session_id,
            "subject": self.subject,
            "replyTo": self.reply_to,
            "to": self.to,
            "partitionKey": self.partition_key,
            "scheduledEnqueueTime": _jsonable(self.scheduled_enqueue_time),
            "timeToLive": self.time_to_live,
            "expiryTime": _jsonable(self.expiry_time),
            "creationTime": _jsonable(self.creation_time),
            "deadLetterReason": self.dead_letter_reason,
            "deadLetterErrorDescription": self.dead_letter_error_description,
            "applicationProperties": _jsonable(self.application_properties),
            "systemProperties": _jsonable(self.system_properties),
        }


class LockedMessage(ParsedMessage):
    """A message held under a peek-lock, settled through its lock token."""
    lock_token: str

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["lockToken"] = self.lock_token
        return data


class SequenceLock(BaseModel):
    """Result of locking a message by sequence number on the management node."""
    model_config = ConfigDict(extra='forbid')

    sequence_number: int
    lock_token: uuid.UUID
    message: Optional[ParsedMessage] = None


class OutgoingMessage(BaseModel):
    """
    A message to send.

    Non-string bodies are JSON-serialized; ``time_to_live`` accepts seconds
    or a timedelta.
    """
    model_config = ConfigDict(extra='forbid')

    body: Any
    message_id: Optional[str] = None
    content_type: Optional[str] = None
    correlation_id: Optional[str] = None
    subject: Optional[str] = None
    reply_to: Optional[str] = None
    to: Optional[str] = None
    session_id: Optional[str] = None
    time_to_live: Optional[Union[float, timedelta]] = None
    scheduled_enqueue_time: Optional[datetime] = None
    partition_key: Optional[str] = None
    application_properties: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('time_to_live')
    @classmethod
    def validate_ttl(cls, v: Optional[Union[float, timedelta]]) -> Optional[float]:
        if v is None:
            return None
        seconds = v.total_seconds() if isinstance(v, timedelta) else float(v)
        if seconds <= 0:
            raise ValueError("time_to_live must be positive")
        return seconds


class BatchItemError(BaseModel):
    """One failed item of a batch operation."""
    id: str
    error: str


class BatchOperationResult(BaseModel):
    """Aggregate of a per-item batch operation; partial failure never raises."""
    model_config = ConfigDict(extra='forbid')

    success_count: int = 0
    failure_count: int = 0
    errors: List[BatchItemError] = Field(default_factory=list)

    def add_success(self) -> None:
        self.success_count += 1

    def add_failure(self, item_id: Any, error: str) -> None:
        self.failure_count += 1
        self.errors.append(BatchItemError(id=str(item_id), error=error))

    def merge(self, other: 'BatchOperationResult') -> 'BatchOperationResult':
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "errors": [{"id": e.id, "error": e.error} for e in self.errors],
        }


class SearchFilter(BaseModel):
    """
    Case-insensitive substring criteria for a message search.

    Blank criteria are ignored; every remaining criterion must match. With no
    criteria at all every message matches.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    body: Optional[str] = None
    message_id: Optional[str] = None
    subject: Optional[str] = None

    @field_validator('body', 'message_id', 'subject')
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v

    @property
    def is_active(self) -> bool:
        return any((self.body, self.message_id, self.subject))

    def describe(self) -> str:
        parts = []
        if self.message_id:
            parts.append(f"ID: {self.message_id}")
        if self.subject:
            parts.append(f"Subject: {self.subject}")
        if self.body:
            parts.append(f"Body: {self.body}")
        return ", ".join(parts) or "No filter"

    @staticmethod
    def _contains(value: Any, needle: str) -> bool:
        if value is None:
            return False
        if not isinstance(value, str):
            value = json.dumps(_jsonable(value), default=str)
        return needle.lower() in value.lower()

    def matches(self, message: ParsedMessage) -> bool:
        if self.message_id and not self._contains(message.message_id, self.message_id):
            return False
        if self.subject and not self._contains(message.subject, self.subject):
            return False
        if self.body and not self._contains(message.body, self.body):
            return False
        return True


class SearchResult(BaseModel):
    """Outcome of a message search."""
    model_config = ConfigDict(extra='forbid')

    scanned_count: int = 0
    match_count: int = 0
    matching_sequence_numbers: List[int] = Field(default_factory=list)
    stopped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scannedCount": self.scanned_count,
            "matchCount": self.match_count,
            "matchingSequenceNumbers": list(self.matching_sequence_numbers),
            "stopped": self.stopped,
        }
