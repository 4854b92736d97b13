"""
Purge Engine

Deletes every message of an entity. The fast path asks the broker to
batch-delete messages server-side; when that is rejected or unsupported
the engine falls back to several parallel receive-and-delete workers, each
on its own connection, that stop after repeated empty flushes.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
from typing import Callable, Optional

from azure.servicebus import ServiceBusReceiveMode

from .config import ClientConfig, PurgeSettings
from .connection import ClientFactory, open_connection
from .exceptions import (
    ManagementOperationError,
    ReceiverError,
    TimeoutError as ServiceBusTimeoutError,
    translate_errors,
)
from .logging_utils import StructuredLogger
from .management import ManagementChannel
from .metrics import ClientMetrics, get_metrics
from .models import EntityDescriptor


logger = StructuredLogger('sbexplorer.purge')

ProgressCallback = Callable[[int], None]

STRATEGY_BATCH_DELETE = "batch_delete"
STRATEGY_RECEIVE = "receive_and_delete"


class PurgeOperation:
    """
    Handle for a running purge.

    ``deleted_count`` only grows. Awaiting the handle yields the final count
    or raises the error that ended the purge.
    """

    def __init__(self, entity_path: str, on_progress: Optional[ProgressCallback] = None):
        self.entity_path = entity_path
        self.deleted_count = 0
        self.strategy: Optional[str] = None
        self._on_progress = on_progress
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self) -> int:
        """Ask the purge to finish at its next flush boundary; returns the count so far."""
        if not self._stop_requested:
            logger.info("Purge stop requested", entity_path=self.entity_path,
                        deleted=self.deleted_count)
        self._stop_requested = True
        return self.deleted_count

    def get_count(self) -> int:
        return self.deleted_count

    def add_done_callback(self, callback: Callable[["PurgeOperation"], None]) -> None:
        """Call ``callback`` with this handle once the purge has ended."""
        if self._task is None:
            raise RuntimeError("purge has not been started")
        self._task.add_done_callback(lambda _task: callback(self))

    def _add(self, count: int) -> None:
        if count <= 0:
            return
        self.deleted_count += count
        if self._on_progress is not None:
            self._on_progress(self.deleted_count)

    async def wait(self) -> int:
        if self._task is None:
            raise RuntimeError("purge has not been started")
        return await self._task

    def __await__(self):
        return self.wait().__await__()


class PurgeEngine:
    """Starts purges against one namespace."""

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

    @property
    def settings(self) -> PurgeSettings:
        return self.config.purge

    def start(self, entity: EntityDescriptor, on_progress: Optional[ProgressCallback] = None) -> PurgeOperation:
        """Begin purging ``entity`` in the background and return its handle."""
        operation = PurgeOperation(entity.entity_path, on_progress)
        operation._task = asyncio.create_task(self._run(entity, operation))
        logger.log_operation("purge_started", entity.entity_path)
        return operation

    async def _run(self, entity: EntityDescriptor, operation: PurgeOperation) -> int:
        with self.metrics.time_operation("purge"):
            finished = False
            if self.settings.use_batch_delete:
                finished = await self._batch_delete(entity, operation)
            if not finished and not operation.stop_requested:
                await self._receive_and_delete(entity, operation)

        logger.log_operation("purge_finished", entity.entity_path, deleted=operation.deleted_count,
                             strategy=operation.strategy)
        return operation.deleted_count

    # ========== Fast path ==========

    async def _batch_delete(self, entity: EntityDescriptor, operation: PurgeOperation) -> bool:
        """Run server-side batch deletes; False means fall back to receivers."""
        entity_path = entity.entity_path
        batch_size = self.settings.batch_delete_size
        operation.strategy = STRATEGY_BATCH_DELETE
        connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
        try:
            async with ManagementChannel(connection, entity, self.config) as management:
                while not operation.stop_requested:
                    deleted = await management.batch_delete(batch_size)
                    operation._add(deleted)
                    self.metrics.track_purged(entity_path, STRATEGY_BATCH_DELETE, deleted)
                    logger.debug("Batch delete", entity_path=entity_path, deleted=deleted,
                                 total=operation.deleted_count)
                    if deleted < batch_size:
                        break
            return True
        except (ManagementOperationError, ServiceBusTimeoutError) as e:
            logger.warning("Batch delete unavailable; falling back to parallel receivers",
                           entity_path=entity_path, error_type=type(e).__name__,
                           error_message=str(e))
            return False
        finally:
            await connection.close()

    # ========== Fallback ==========

    async def _receive_and_delete(self, entity: EntityDescriptor, operation: PurgeOperation) -> None:
        operation.strategy = STRATEGY_RECEIVE
        workers = [
            asyncio.create_task(self._worker(entity, operation, index))
            for index in range(self.settings.workers)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            operation.stop()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    def _idle_timeout(self, seen_any: bool, empty_flushes: int) -> float:
        if not seen_any:
            return self.settings.initial_idle_timeout
        if empty_flushes > 0:
            return self.settings.empty_flush_idle_timeout
        return self.settings.flowing_idle_timeout

    async def _worker(self, entity: EntityDescriptor, operation: PurgeOperation, index: int) -> int:
        entity_path = entity.entity_path
        settings = self.settings
        connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
        deleted = 0
        try:
            receiver = connection.receiver(
                entity,
                receive_mode=ServiceBusReceiveMode.RECEIVE_AND_DELETE,
                prefetch_count=0,
            )
            empty_flushes = 0
            seen_any = False
            with translate_errors("purge", entity_path, connection.host,
                                  lambda e: ReceiverError(reason=str(e), entity_path=entity_path)):
                while True:
                    batch = await receiver.receive_messages(
                        max_message_count=settings.credit_batch,
                        max_wait_time=self._idle_timeout(seen_any, empty_flushes),
                    )
                    # Each receive returns at a full batch or when the receiver idles
                    if batch:
                        seen_any = True
                        operation._add(len(batch))
                        self.metrics.track_purged(entity_path, STRATEGY_RECEIVE, len(batch))
                        deleted += len(batch)
                        logger.debug("Purge flush", entity_path=entity_path, worker=index,
                                     flushed=len(batch), total=operation.deleted_count)
                        empty_flushes = 0
                    else:
                        empty_flushes += 1
                    if operation.stop_requested or empty_flushes >= settings.max_empty_flushes:
                        break
        finally:
            await connection.close()

        logger.debug("Purge worker finished", entity_path=entity_path, worker=index, deleted=deleted)
        return deleted
