"""
sbexplorer: Azure Service Bus Message Explorer

Peek, search, lock, settle, send, purge and monitor messages on Service Bus
queues, topic subscriptions and their dead-letter sub-queues.
"""

__version__ = "0.1.0"
__author__ = "sbexplorer Contributors"

from .client import ServiceBusExplorerClient
from .config import ClientConfig, load_config
from .exceptions import (
    AuthError,
    EntityNotFoundError,
    ServiceBusConnectionError,
    ServiceBusError,
    TimeoutError,
)
from .models import (
    BatchOperationResult,
    EntityDescriptor,
    LockedMessage,
    OutgoingMessage,
    ParsedMessage,
    SearchFilter,
    SearchResult,
)
from .monitor import MessageMonitor
from .purge import PurgeOperation
from .search import SearchOperation

__all__ = [
    "AuthError",
    "BatchOperationResult",
    "ClientConfig",
    "EntityDescriptor",
    "EntityNotFoundError",
    "LockedMessage",
    "MessageMonitor",
    "OutgoingMessage",
    "ParsedMessage",
    "PurgeOperation",
    "SearchFilter",
    "SearchOperation",
    "SearchResult",
    "ServiceBusConnectionError",
    "ServiceBusError",
    "ServiceBusExplorerClient",
    "TimeoutError",
    "load_config",
    "__version__",
]
