"""
Peek-Lock Receiver

Locks up to N messages on an entity with a peek-lock receiver that does not
prefetch. Locked messages are registered with the client's LockRegistry,
which keeps their receiver and connection alive until every one of them is
settled.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
from typing import List, Optional

from azure.servicebus import ServiceBusReceivedMessage
from azure.servicebus.aio import ServiceBusReceiver

from .config import ClientConfig
from .connection import ClientFactory, ServiceBusConnection, open_connection
from .exceptions import ReceiverError, translate_errors
from .logging_utils import StructuredLogger
from .metrics import ClientMetrics, get_metrics
from .models import EntityDescriptor, LockedMessage
from .parser import parse_locked_message
from .registry import LockedMessageHandle, LockRegistry


logger = StructuredLogger('sbexplorer.receiver')


class PeekLockReceiver:
    """Receives messages under peek-lock and hands them to a LockRegistry."""

    def __init__(
        self,
        namespace: str,
        token: str,
        registry: LockRegistry,
        config: Optional[ClientConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional[ClientMetrics] = None,
    ):
        self.namespace = namespace
        self.token = token
        self.registry = registry
        self.config = config or ClientConfig()
        self.client_factory = client_factory
        self.metrics = metrics or get_metrics()

    async def receive_and_lock(
        self,
        entity: EntityDescriptor,
        count: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> List[LockedMessage]:
        """
        Lock up to ``count`` messages.

        Collection stops when ``count`` messages arrived, when no further
        message arrives within the inactivity timeout after the latest one,
        or when ``timeout_seconds`` elapses. An empty entity therefore costs
        the full ``timeout_seconds``.

        Raises:
            ReceiverError: the receiver failed
            AuthError, EntityNotFoundError, ServiceBusConnectionError: the namespace refused the entity
        """
        settings = self.config.receive
        count = settings.default_count if count is None else count
        timeout_seconds = settings.default_timeout if timeout_seconds is None else timeout_seconds
        if count < 1:
            raise ValueError("count must be at least 1")
        entity_path = entity.entity_path

        with self.metrics.time_operation("receive_and_lock"):
            connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
            try:
                receiver = connection.receiver(entity)
                with translate_errors("receive_and_lock", entity_path, connection.host,
                                      lambda e: ReceiverError(reason=str(e), entity_path=entity_path)):
                    received = await self._collect(receiver, count, timeout_seconds)
                locked = await self._register(connection, receiver, entity_path, received)
            except BaseException:
                await connection.close()
                raise

            if not locked:
                await connection.close()

        self.metrics.track_locked(entity_path, len(locked))
        self.metrics.update_active_locks(len(self.registry))
        logger.log_operation("receive_and_lock", entity_path, requested=count, locked=len(locked))
        return locked

    async def _collect(
        self,
        receiver: ServiceBusReceiver,
        count: int,
        timeout_seconds: float,
    ) -> List[ServiceBusReceivedMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        inactivity = self.config.receive.inactivity_timeout
        collected: List[ServiceBusReceivedMessage] = []

        while len(collected) < count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            wait = min(remaining, inactivity) if collected else remaining
            batch = await receiver.receive_messages(
                max_message_count=count - len(collected),
                max_wait_time=wait,
            )
            if not batch:
                break
            collected.extend(batch)
        return collected

    async def _register(
        self,
        connection: ServiceBusConnection,
        receiver: ServiceBusReceiver,
        entity_path: str,
        received: List[ServiceBusReceivedMessage],
    ) -> List[LockedMessage]:
        locked: List[LockedMessage] = []
        for item in received:
            message = parse_locked_message(item)
            try:
                self.registry.register(LockedMessageHandle(
                    lock_token=message.lock_token,
                    received=item,
                    receiver=receiver,
                    connection=connection,
                    message=message,
                    entity_path=entity_path,
                ))
            except ValueError as e:
                logger.warning("Abandoning message with duplicate lock token", entity_path=entity_path,
                               lock_token=message.lock_token, error_message=str(e))
                with translate_errors("abandon", entity_path, connection.host):
                    await receiver.abandon_message(item)
                continue
            locked.append(message)
        return locked
