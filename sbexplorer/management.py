"""
Management Channel

Operations served by an entity's management node: peek, batch delete,
receive by sequence number (lock or delete) and disposition updates for
sequence-locked messages. Requests go through ``azure.servicebus``
receivers; peek-lock and receive-and-delete requests each use their own
receiver, created on first use.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from azure.servicebus import ServiceBusReceivedMessage, ServiceBusReceiveMode
from azure.servicebus import exceptions as sb_errors
from azure.servicebus.aio import ServiceBusReceiver

from .config import ClientConfig
from .connection import ServiceBusConnection
from .constants import (
    DISPOSITION_ABANDONED,
    DISPOSITION_COMPLETED,
    DISPOSITION_DEFERRED,
    DISPOSITION_STATES,
    DISPOSITION_SUSPENDED,
    ERROR_ALREADY_SETTLED,
    ERROR_LOCK_LOST,
    ERROR_NOT_FOUND_OR_EXPIRED,
)
from .exceptions import (
    BatchDeleteError,
    DispositionError,
    PeekError,
    ServiceBusConnectionError,
    translate_errors,
)
from .logging_utils import StructuredLogger
from .models import EntityDescriptor, ParsedMessage, SequenceLock
from .parser import parse_message
from .resilience import bounded


logger = StructuredLogger('sbexplorer.management')

# SDK failures that end the whole disposition request rather than one token
FATAL_SDK_ERRORS = (
    sb_errors.ServiceBusConnectionError,
    sb_errors.ServiceBusAuthenticationError,
    sb_errors.ServiceBusAuthorizationError,
    sb_errors.MessagingEntityNotFoundError,
)


class ManagementChannel:
    """
    Management-node operations on one entity of an open connection.

    Requests are serialized: at most one is outstanding per channel.
    """

    def __init__(self, connection: ServiceBusConnection, entity: EntityDescriptor,
                 config: Optional[ClientConfig] = None):
        self.connection = connection
        self.entity = entity
        self.entity_path = entity.entity_path
        self.config = config or connection.config
        self._receivers: Dict[ServiceBusReceiveMode, ServiceBusReceiver] = {}
        self._locked: Dict[str, ServiceBusReceivedMessage] = {}
        self._request_lock = asyncio.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open and self.connection.is_open

    async def open(self) -> None:
        if not self.connection.is_open:
            raise ServiceBusConnectionError(reason="not connected", host=self.connection.host)
        self._open = True
        logger.debug("Management channel open", entity_path=self.entity_path)

    async def close(self) -> None:
        receivers, self._receivers = list(self._receivers.values()), {}
        self._locked.clear()
        self._open = False
        for receiver in receivers:
            await self.connection.release(receiver)

    async def __aenter__(self) -> "ManagementChannel":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    def _receiver(self, mode: ServiceBusReceiveMode = ServiceBusReceiveMode.PEEK_LOCK) -> ServiceBusReceiver:
        if not self.is_open:
            raise ServiceBusConnectionError(reason="management channel not open", host=self.connection.host)
        receiver = self._receivers.get(mode)
        if receiver is None:
            receiver = self.connection.receiver(self.entity, receive_mode=mode)
            self._receivers[mode] = receiver
        return receiver

    def _errors(self, operation: str, error_factory=None):
        return translate_errors(operation, self.entity_path, self.connection.host, error_factory)

    # ========== Peek ==========

    async def peek(self, from_sequence_number: int, count: int) -> List[ParsedMessage]:
        """
        Browse up to ``count`` messages starting at ``from_sequence_number``.

        Returns messages in ascending sequence order, none below
        ``from_sequence_number``; messages without a sequence number are
        dropped. An empty entity yields an empty list.

        Raises:
            PeekError: the node rejected the request
            TimeoutError: no response within the request timeout
        """
        receiver = self._receiver()
        logger.debug("Management request", operation="peek", entity_path=self.entity_path,
                     from_sequence_number=from_sequence_number, count=count)
        async with self._request_lock:
            with self._errors("peek", lambda e: PeekError(str(e))):
                received = await bounded(
                    receiver.peek_messages(max_message_count=count, sequence_number=from_sequence_number),
                    self.config.timeouts.request,
                    "peek",
                )

        messages = [parse_message(m) for m in received]
        messages = [
            m for m in messages
            if m.sequence_number is not None and m.sequence_number >= from_sequence_number
        ]
        messages.sort(key=lambda m: m.sequence_number)
        return messages[:count]

    # ========== Batch delete ==========

    async def batch_delete(self, max_count: int) -> int:
        """
        Delete up to ``max_count`` messages enqueued before now, server-side.

        Raises:
            BatchDeleteError: the node rejected or does not support the request
        """
        receiver = self._receiver(ServiceBusReceiveMode.RECEIVE_AND_DELETE)
        async with self._request_lock:
            with self._errors("batch_delete", lambda e: BatchDeleteError(str(e))):
                deleted = await bounded(
                    receiver.delete_messages(
                        max_message_count=max_count,
                        before_enqueued_time_utc=datetime.now(timezone.utc),
                    ),
                    self.config.timeouts.request,
                    "batch_delete",
                )
        if deleted is None:
            raise BatchDeleteError("response carried no message count")
        return int(deleted)

    # ========== Receive by sequence number ==========

    async def _receive_by_sequence(self, sequence_numbers: List[int],
                                   mode: ServiceBusReceiveMode) -> List[ServiceBusReceivedMessage]:
        receiver = self._receiver(mode)
        return await bounded(
            receiver.receive_deferred_messages(sequence_numbers),
            self.config.timeouts.request,
            "receive_by_sequence",
        )

    async def _receive_existing(self, sequence_numbers: Iterable[int],
                                mode: ServiceBusReceiveMode) -> List[ServiceBusReceivedMessage]:
        seqs = list(dict.fromkeys(int(n) for n in sequence_numbers))
        if not seqs:
            return []
        with self._errors("receive_by_sequence"):
            try:
                return await self._receive_by_sequence(seqs, mode)
            except sb_errors.MessageNotFoundError:
                if len(seqs) == 1:
                    return []
                logger.info("Batch sequence request hit missing messages; retrying individually",
                            entity_path=self.entity_path, count=len(seqs))

            received = []
            for seq in seqs:
                try:
                    received.extend(await self._receive_by_sequence([seq], mode))
                except sb_errors.MessageNotFoundError:
                    logger.debug("Sequence number not found", entity_path=self.entity_path,
                                 sequence_number=seq)
            return received

    async def lock_by_sequence_numbers(self, sequence_numbers: Iterable[int]) -> List[SequenceLock]:
        """
        Lock specific messages by sequence number (peek-lock).

        Returns one lock per message that still exists. The locks are settled
        with ``update_disposition`` on this channel.
        """
        async with self._request_lock:
            received = await self._receive_existing(sequence_numbers, ServiceBusReceiveMode.PEEK_LOCK)
        locks = []
        for message in received:
            if message.lock_token is None or message.sequence_number is None:
                logger.warning("Locked message without lock token or sequence number",
                               entity_path=self.entity_path)
                continue
            token = uuid.UUID(str(message.lock_token))
            self._locked[str(token)] = message
            locks.append(SequenceLock(
                sequence_number=message.sequence_number,
                lock_token=token,
                message=parse_message(message),
            ))
        return locks

    async def receive_and_delete_by_sequence_numbers(self, sequence_numbers: Iterable[int]) -> List[int]:
        """Delete specific messages by sequence number; returns those deleted."""
        async with self._request_lock:
            received = await self._receive_existing(sequence_numbers, ServiceBusReceiveMode.RECEIVE_AND_DELETE)
        return [m.sequence_number for m in received if m.sequence_number is not None]

    # ========== Disposition ==========

    async def update_disposition(
        self,
        lock_tokens: Iterable[Any],
        state: str,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Settle messages locked by ``lock_by_sequence_numbers`` on this channel.

        Args:
            lock_tokens: Lock tokens (UUID or UUID strings)
            state: completed, abandoned, suspended (dead-letter) or defered
            reason: Dead-letter reason (suspended only)
            description: Dead-letter description (suspended only)

        Returns:
            Failed lock tokens mapped to the failure text; empty when all settled
        """
        if state not in DISPOSITION_STATES:
            raise ValueError(f"Unknown disposition state '{state}'")
        receiver = self._receiver()
        failures: Dict[str, str] = {}
        for token in lock_tokens:
            token = str(token if isinstance(token, uuid.UUID) else uuid.UUID(str(token)))
            message = self._locked.pop(token, None)
            if message is None:
                failures[token] = ERROR_NOT_FOUND_OR_EXPIRED
                continue
            try:
                async with self._request_lock:
                    await bounded(
                        self._settle(receiver, message, state, reason, description),
                        self.config.timeouts.request,
                        "update_disposition",
                    )
            except sb_errors.MessageLockLostError:
                failures[token] = ERROR_LOCK_LOST
            except sb_errors.MessageAlreadySettled:
                failures[token] = ERROR_ALREADY_SETTLED
            except FATAL_SDK_ERRORS:
                with self._errors("update_disposition"):
                    raise
            except sb_errors.ServiceBusError as e:
                failures[token] = DispositionError(str(e)).message
        if failures:
            logger.warning("Disposition update failed for some messages", entity_path=self.entity_path,
                           state=state, failure_count=len(failures))
        return failures

    @staticmethod
    async def _settle(receiver: ServiceBusReceiver, message: ServiceBusReceivedMessage, state: str,
                      reason: Optional[str], description: Optional[str]) -> None:
        if state == DISPOSITION_COMPLETED:
            await receiver.complete_message(message)
        elif state == DISPOSITION_ABANDONED:
            await receiver.abandon_message(message)
        elif state == DISPOSITION_SUSPENDED:
            await receiver.dead_letter_message(message, reason=reason, error_description=description)
        elif state == DISPOSITION_DEFERRED:
            await receiver.defer_message(message)
