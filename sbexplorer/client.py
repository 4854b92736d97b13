"""
Service Bus Explorer Client

Facade over the connection, management, receiver, settlement, sender, purge,
search and monitor components for one namespace and bearer token. The client owns
the LockRegistry: handles created by ``receive_and_lock`` stay alive until
they are settled or the client is closed.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Union

from .config import ClientConfig
from .connection import ClientFactory, open_connection
from .constants import (
    DEAD_LETTER_DESCRIPTION_KEY,
    DEAD_LETTER_REASON_KEY,
    DISPOSITION_SUSPENDED,
    ERROR_SEQUENCE_NOT_FOUND,
    LOCATE_PEEK_BATCH,
)
from .exceptions import DeadLetterReason, SendError
from .logging_utils import StructuredLogger, track_operation_time
from .management import ManagementChannel
from .metrics import ClientMetrics, get_metrics
from .models import (
    BatchOperationResult,
    EntityDescriptor,
    LockedMessage,
    OutgoingMessage,
    ParsedMessage,
    SearchFilter,
    namespace_host,
)
from .monitor import ErrorCallback, MessageCallback, MessageMonitor
from .purge import ProgressCallback, PurgeEngine, PurgeOperation
from .receiver import PeekLockReceiver
from .registry import LockRegistry
from .search import SearchEngine, SearchOperation, SearchProgressCallback
from .sender import MessageSender
from .settlement import SettlementEngine


logger = StructuredLogger('sbexplorer.client')

Entity = Union[str, EntityDescriptor]

DEFAULT_DEAD_LETTER_REASON = "Manual dead letter"
DEFAULT_DEAD_LETTER_DESCRIPTION = "Moved by user"


def resend_message(message: ParsedMessage) -> OutgoingMessage:
    """Copy of ``message`` suitable for sending again, without dead-letter metadata."""
    application_properties = {
        k: v for k, v in message.application_properties.items()
        if k not in (DEAD_LETTER_REASON_KEY, DEAD_LETTER_DESCRIPTION_KEY)
    }
    return OutgoingMessage(
        body=message.raw_body if message.raw_body is not None else message.body,
        message_id=message.message_id,
        content_type=message.content_type,
        correlation_id=message.correlation_id,
        subject=message.subject,
        reply_to=message.reply_to,
        to=message.to,
        session_id=message.session_id,
        time_to_live=message.time_to_live,
        partition_key=message.partition_key,
        application_properties=application_properties,
    )


class ServiceBusExplorerClient:
    """
    Operations against the entities of one Service Bus namespace.

    Usage:
        async with ServiceBusExplorerClient("contoso", token) as client:
            messages = await client.peek("orders", count=20)
            locked = await client.receive_and_lock("orders", count=5)
            await client.complete([m.lock_token for m in locked])
    """

    def __init__(
        self,
        namespace: str,
        token: str,
        config: Optional[ClientConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional[ClientMetrics] = None,
    ):
        self.namespace = namespace
        self.token = token
        self.config = config or ClientConfig()
        self.client_factory = client_factory
        self.metrics = metrics or get_metrics()
        self.registry = LockRegistry()
        self.settlement = SettlementEngine(self.registry, self.metrics)
        self.receiver = PeekLockReceiver(
            namespace, token, self.registry, self.config, client_factory, self.metrics
        )
        self.purge_engine = PurgeEngine(namespace, token, self.config, client_factory, self.metrics)
        self.search_engine = SearchEngine(namespace, token, self.config, client_factory, self.metrics)
        self._monitors: Set[MessageMonitor] = set()
        self._purges: Set[PurgeOperation] = set()
        self._searches: Set[SearchOperation] = set()
        self._closed = False

    async def __aenter__(self) -> "ServiceBusExplorerClient":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    # ========== Helpers ==========

    def entity(self, entity: Entity) -> EntityDescriptor:
        """Normalize an entity path or descriptor to a descriptor of this namespace."""
        if isinstance(entity, EntityDescriptor):
            if entity.host != namespace_host(self.namespace):
                raise ValueError(f"Entity {entity} does not belong to namespace '{self.namespace}'")
            return entity
        return EntityDescriptor.from_path(self.namespace, entity)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("client is closed")

    @asynccontextmanager
    async def _management(self, entity: EntityDescriptor) -> AsyncIterator[ManagementChannel]:
        connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
        try:
            async with ManagementChannel(connection, entity, self.config) as management:
                yield management
        finally:
            await connection.close()

    @asynccontextmanager
    async def _sender(self, entity: EntityDescriptor) -> AsyncIterator[MessageSender]:
        connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
        try:
            async with MessageSender(connection, entity, self.config) as sender:
                yield sender
        finally:
            await connection.close()

    # ========== Browse ==========

    @track_operation_time(logger, "peek")
    async def peek(self, entity: Entity, from_sequence_number: int = 0, count: int = 10) -> List[ParsedMessage]:
        """Browse messages without locking them."""
        self._check_open()
        descriptor = self.entity(entity)
        path = descriptor.entity_path
        with self.metrics.time_operation("peek"):
            async with self._management(descriptor) as management:
                messages = await management.peek(from_sequence_number, count)
        self.metrics.track_peeked(path, len(messages))
        logger.log_operation("peek", path, from_sequence_number=from_sequence_number,
                             count=len(messages))
        return messages

    @track_operation_time(logger, "search")
    async def search(
        self,
        entity: Entity,
        body: Optional[str] = None,
        message_id: Optional[str] = None,
        subject: Optional[str] = None,
        on_progress: Optional[SearchProgressCallback] = None,
        max_matches: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> SearchOperation:
        """
        Start a background scan for messages containing the given text.

        Await the handle for the SearchResult; ``stop()`` ends the scan
        after the page in flight.
        """
        self._check_open()
        search_filter = SearchFilter(body=body, message_id=message_id, subject=subject)
        operation = self.search_engine.start(
            self.entity(entity), search_filter, on_progress, max_matches, max_messages
        )
        self._searches.add(operation)
        operation.add_done_callback(self._searches.discard)
        return operation

    # ========== Peek-lock ==========

    @track_operation_time(logger, "receive_and_lock")
    async def receive_and_lock(
        self,
        entity: Entity,
        count: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> List[LockedMessage]:
        """Lock up to ``count`` messages; settle them with complete/abandon/dead_letter."""
        self._check_open()
        return await self.receiver.receive_and_lock(self.entity(entity), count, timeout_seconds)

    @track_operation_time(logger, "complete")
    async def complete(self, lock_tokens: Iterable[str]) -> BatchOperationResult:
        return await self.settlement.complete(lock_tokens)

    @track_operation_time(logger, "abandon")
    async def abandon(self, lock_tokens: Iterable[str]) -> BatchOperationResult:
        return await self.settlement.abandon(lock_tokens)

    @track_operation_time(logger, "dead_letter")
    async def dead_letter(
        self,
        lock_tokens: Iterable[str],
        reason: Optional[str] = DeadLetterReason.MANUAL,
        description: Optional[str] = None,
    ) -> BatchOperationResult:
        return await self.settlement.dead_letter(lock_tokens, reason, description)

    # ========== Send ==========

    @track_operation_time(logger, "send")
    async def send(self, entity: Entity, body: Any = None, **properties: Any) -> str:
        """
        Send one message to a queue or topic.

        ``body`` may be an OutgoingMessage; otherwise keyword arguments are
        the OutgoingMessage fields. Returns the message id.
        """
        self._check_open()
        message = body if isinstance(body, OutgoingMessage) else OutgoingMessage(body=body, **properties)
        descriptor = self.entity(entity)
        path = descriptor.send_path
        with self.metrics.time_operation("send"):
            async with self._sender(descriptor) as sender:
                message_id = await sender.send(message)
        self.metrics.track_sent(path)
        logger.log_operation("send", path, message_id=message_id)
        return message_id

    @track_operation_time(logger, "send_batch")
    async def send_batch(self, entity: Entity, messages: Iterable[Union[OutgoingMessage, Dict[str, Any]]]) -> BatchOperationResult:
        """Send several messages over one connection."""
        self._check_open()
        outgoing = [m if isinstance(m, OutgoingMessage) else OutgoingMessage(**m) for m in messages]
        descriptor = self.entity(entity)
        path = descriptor.send_path
        with self.metrics.time_operation("send_batch"):
            async with self._sender(descriptor) as sender:
                result = await sender.send_batch(outgoing)
        self.metrics.track_sent(path, result.success_count)
        logger.log_operation("send_batch", path, success_count=result.success_count,
                             failure_count=result.failure_count)
        return result

    # ========== Purge / monitor ==========

    @track_operation_time(logger, "purge")
    async def purge(self, entity: Entity, on_progress: Optional[ProgressCallback] = None) -> PurgeOperation:
        """Start deleting every message of the entity; await the handle for the final count."""
        self._check_open()
        operation = self.purge_engine.start(self.entity(entity), on_progress)
        self._purges.add(operation)
        operation.add_done_callback(self._purges.discard)
        return operation

    @track_operation_time(logger, "monitor")
    async def monitor(
        self,
        entity: Entity,
        on_message: MessageCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> MessageMonitor:
        """Start a monitor on the entity and return it."""
        self._check_open()
        monitor = MessageMonitor(
            self.namespace,
            self.token,
            self.entity(entity),
            on_message,
            on_error,
            self.config,
            self.client_factory,
            self.metrics,
            on_stopped=self._monitors.discard,
        )
        self._monitors.add(monitor)
        await monitor.start()
        return monitor

    # ========== By sequence number ==========

    @track_operation_time(logger, "delete_by_sequence")
    async def delete_by_sequence(self, entity: Entity, sequence_numbers: Iterable[int]) -> BatchOperationResult:
        """Delete specific messages; missing ones are reported per item."""
        self._check_open()
        wanted = list(dict.fromkeys(int(n) for n in sequence_numbers))
        descriptor = self.entity(entity)
        path = descriptor.entity_path
        result = BatchOperationResult()
        with self.metrics.time_operation("delete_by_sequence"):
            async with self._management(descriptor) as management:
                deleted = set(await management.receive_and_delete_by_sequence_numbers(wanted))
        for seq in wanted:
            if seq in deleted:
                result.add_success()
            else:
                result.add_failure(seq, ERROR_SEQUENCE_NOT_FOUND)
        logger.log_operation("delete_by_sequence", path, success_count=result.success_count,
                             failure_count=result.failure_count)
        return result

    @track_operation_time(logger, "dead_letter_by_sequence")
    async def dead_letter_by_sequence(
        self,
        entity: Entity,
        sequence_numbers: Iterable[int],
        reason: str = DEFAULT_DEAD_LETTER_REASON,
        description: str = DEFAULT_DEAD_LETTER_DESCRIPTION,
    ) -> BatchOperationResult:
        """Lock specific messages by sequence number and move them to the dead-letter sub-queue."""
        self._check_open()
        wanted = list(dict.fromkeys(int(n) for n in sequence_numbers))
        descriptor = self.entity(entity)
        path = descriptor.entity_path
        result = BatchOperationResult()
        with self.metrics.time_operation("dead_letter_by_sequence"):
            async with self._management(descriptor) as management:
                locks = await management.lock_by_sequence_numbers(wanted)
                locked = {lock.sequence_number for lock in locks}
                for seq in wanted:
                    if seq not in locked:
                        result.add_failure(seq, ERROR_SEQUENCE_NOT_FOUND)
                if locks:
                    failures = await management.update_disposition(
                        [lock.lock_token for lock in locks], DISPOSITION_SUSPENDED, reason, description
                    )
                    for lock in locks:
                        error = failures.get(str(lock.lock_token))
                        if error is None:
                            result.add_success()
                        else:
                            result.add_failure(lock.sequence_number, error)
        logger.log_operation("dead_letter_by_sequence", path, success_count=result.success_count,
                             failure_count=result.failure_count)
        return result

    async def _locate(self, management: ManagementChannel, wanted: List[int]) -> Dict[int, ParsedMessage]:
        """Peek forward from the lowest wanted sequence number until all are found or the entity ends."""
        found: Dict[int, ParsedMessage] = {}
        if not wanted:
            return found
        remaining = set(wanted)
        cursor = min(wanted)
        highest = max(wanted)
        while remaining and cursor <= highest:
            page = await management.peek(cursor, LOCATE_PEEK_BATCH)
            if not page:
                break
            for message in page:
                if message.sequence_number in remaining:
                    found[message.sequence_number] = message
                    remaining.discard(message.sequence_number)
            cursor = page[-1].sequence_number + 1
        return found

    @track_operation_time(logger, "resend_by_sequence")
    async def resend_by_sequence(
        self,
        entity: Entity,
        sequence_numbers: Iterable[int],
        from_dead_letter: bool = True,
        delete_original: bool = True,
    ) -> BatchOperationResult:
        """
        Send copies of specific messages to the main entity.

        Messages are located by peeking the source (the dead-letter sub-queue
        by default), re-sent with their body and properties, and, when
        ``delete_original`` is set, removed from the source afterwards.
        """
        self._check_open()
        descriptor = self.entity(entity)
        source = descriptor.as_dead_letter() if from_dead_letter else descriptor.as_main()
        source_path = source.entity_path
        target_path = descriptor.send_path
        wanted = list(dict.fromkeys(int(n) for n in sequence_numbers))
        result = BatchOperationResult()

        with self.metrics.time_operation("resend_by_sequence"):
            async with self._management(source) as management:
                located = await self._locate(management, wanted)
                for seq in wanted:
                    if seq not in located:
                        result.add_failure(seq, ERROR_SEQUENCE_NOT_FOUND)

                sent: List[int] = []
                if located:
                    async with self._sender(descriptor) as sender:
                        for seq in wanted:
                            if seq not in located:
                                continue
                            try:
                                await sender.send(resend_message(located[seq]))
                            except SendError as e:
                                result.add_failure(seq, e.message)
                                continue
                            sent.append(seq)
                    self.metrics.track_sent(target_path, len(sent))

                if delete_original and sent:
                    deleted = set(await management.receive_and_delete_by_sequence_numbers(sent))
                else:
                    deleted = set(sent)
                for seq in sent:
                    if seq in deleted:
                        result.add_success()
                    else:
                        result.add_failure(seq, "resent but original was not deleted")

        logger.log_operation("resend_by_sequence", source_path, target=target_path,
                             success_count=result.success_count, failure_count=result.failure_count)
        return result

    # ========== Lifecycle ==========

    async def close(self) -> None:
        """Stop monitors, searches and purges, then release every locked handle."""
        if self._closed:
            return
        self._closed = True

        monitors = list(self._monitors)
        if monitors:
            outcomes = await asyncio.gather(*(m.stop() for m in monitors), return_exceptions=True)
            for monitor, outcome in zip(monitors, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning("Monitor failed to stop cleanly during close",
                                   entity_path=monitor.entity_path,
                                   error_type=type(outcome).__name__, error_message=str(outcome))
        self._monitors.clear()

        background = list(self._purges) + list(self._searches)
        for operation in background:
            operation.stop()
        running = [op.wait() for op in background if op.is_running]
        if running:
            for outcome in await asyncio.gather(*running, return_exceptions=True):
                if isinstance(outcome, BaseException):
                    logger.warning("Background operation ended with error during close",
                                   error_type=type(outcome).__name__, error_message=str(outcome))
        self._purges.clear()
        self._searches.clear()

        released = await self.registry.clear()
        self.metrics.update_active_locks(0)
        logger.debug("Client closed", namespace=self.namespace, released_locks=released)
