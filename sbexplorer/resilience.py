"""
Resilience Utilities for Service Bus Explorer

Bounded waits that convert ``asyncio.TimeoutError`` into the typed
:class:`~sbexplorer.exceptions.TimeoutError`.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
from typing import Awaitable, TypeVar

from .exceptions import TimeoutError as ServiceBusTimeoutError
from .logging_utils import StructuredLogger


logger = StructuredLogger('sbexplorer.resilience')

T = TypeVar('T')


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await ``awaitable`` for at most ``timeout`` seconds.

    Raises:
        TimeoutError: The wait expired; the awaitable is cancelled
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"Operation timeout: {operation}",
            operation_name=operation,
            timeout_seconds=timeout
        )
        raise ServiceBusTimeoutError(operation=operation, timeout_seconds=timeout)
