"""
Settlement Engine

Completes, abandons or dead-letters peek-locked messages through the
receiver that locked them. Each token is settled independently and the
outcome of every token is reported in a BatchOperationResult.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

from typing import Awaitable, Callable, Iterable, Optional

from azure.servicebus import ServiceBusReceivedMessage
from azure.servicebus import exceptions as sb_errors
from azure.servicebus.aio import ServiceBusReceiver

from .constants import (
    ERROR_ALREADY_SETTLED,
    ERROR_CONNECTION_CLOSED,
    ERROR_LOCK_LOST,
    ERROR_NOT_FOUND_OR_EXPIRED,
)
from .exceptions import ServiceBusError
from .logging_utils import StructuredLogger
from .metrics import ClientMetrics, get_metrics
from .models import BatchOperationResult
from .registry import LockedMessageHandle, LockRegistry
from .resilience import bounded


logger = StructuredLogger('sbexplorer.settlement')

Settle = Callable[[ServiceBusReceiver, ServiceBusReceivedMessage], Awaitable[None]]


def settlement_error(error: Exception) -> str:
    """Per-token failure text for a settlement error."""
    if isinstance(error, sb_errors.MessageLockLostError):
        return ERROR_LOCK_LOST
    if isinstance(error, sb_errors.MessageAlreadySettled):
        return ERROR_ALREADY_SETTLED
    if isinstance(error, sb_errors.ServiceBusConnectionError):
        return ERROR_CONNECTION_CLOSED
    if isinstance(error, ServiceBusError):
        return error.message
    return str(error) or type(error).__name__


class SettlementEngine:
    """Settles registered lock handles and releases their resources."""

    def __init__(self, registry: LockRegistry, metrics: Optional[ClientMetrics] = None):
        self.registry = registry
        self.metrics = metrics or get_metrics()

    async def complete(self, lock_tokens: Iterable[str]) -> BatchOperationResult:
        """Complete each message, removing it from the entity."""
        return await self._settle_all(
            lock_tokens, "complete",
            lambda receiver, message: receiver.complete_message(message),
        )

    async def abandon(self, lock_tokens: Iterable[str]) -> BatchOperationResult:
        """Abandon each lock so the message becomes available again."""
        return await self._settle_all(
            lock_tokens, "abandon",
            lambda receiver, message: receiver.abandon_message(message),
        )

    async def dead_letter(
        self,
        lock_tokens: Iterable[str],
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BatchOperationResult:
        """Move each message to the dead-letter sub-queue with ``reason``/``description``."""
        return await self._settle_all(
            lock_tokens, "dead_letter",
            lambda receiver, message: receiver.dead_letter_message(
                message, reason=reason, error_description=description
            ),
        )

    async def _settle_all(self, lock_tokens: Iterable[str], disposition: str, settle: Settle) -> BatchOperationResult:
        result = BatchOperationResult()
        for token in lock_tokens:
            token = str(token)
            error = await self._settle_one(token, disposition, settle)
            if error is None:
                result.add_success()
            else:
                result.add_failure(token, error)
            self.metrics.track_settled(disposition, error is None)
        self.metrics.update_active_locks(len(self.registry))
        logger.info(
            f"Settlement finished: {disposition}",
            operation=disposition,
            success_count=result.success_count,
            failure_count=result.failure_count,
        )
        return result

    async def _settle_one(self, token: str, disposition: str, settle: Settle) -> Optional[str]:
        handle = self.registry.remove(token)
        if handle is None:
            logger.debug("Lock token not registered", operation=disposition, lock_token=token)
            return ERROR_NOT_FOUND_OR_EXPIRED

        try:
            if not handle.connection.is_open:
                return ERROR_CONNECTION_CLOSED
            await bounded(
                settle(handle.receiver, handle.received),
                handle.connection.config.timeouts.request,
                disposition,
            )
            logger.log_lock_operation(disposition, handle.entity_path, lock_token=token)
            return None
        except (ServiceBusError, sb_errors.ServiceBusError, sb_errors.MessageAlreadySettled) as e:
            logger.log_error(disposition, type(e).__name__, str(e), lock_token=token,
                             entity_path=handle.entity_path)
            return settlement_error(e)
        finally:
            await self._release(handle)

    async def _release(self, handle: LockedMessageHandle) -> None:
        """Close the receiver and connection once no other handle needs them."""
        if not self.registry.uses_receiver(handle.receiver):
            await handle.connection.release(handle.receiver)
        if not self.registry.uses_connection(handle.connection):
            await handle.connection.close()
