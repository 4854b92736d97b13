"""
Lock Registry

Tracks peek-locked message handles by lock token for one client instance.
Handles live in an arena of slots; every slot carries a generation counter
that is bumped when the slot is freed, so a token that outlived its handle
resolves to nothing instead of to whichever handle reuses the slot.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, NamedTuple, Optional

from azure.servicebus import ServiceBusReceivedMessage
from azure.servicebus.aio import ServiceBusReceiver

from .connection import ServiceBusConnection
from .logging_utils import StructuredLogger
from .models import LockedMessage


logger = StructuredLogger('sbexplorer.registry')


@dataclass
class LockedMessageHandle:
    """Everything needed to settle one peek-locked message."""
    lock_token: str
    received: ServiceBusReceivedMessage = field(repr=False)
    receiver: ServiceBusReceiver = field(repr=False)
    connection: ServiceBusConnection = field(repr=False)
    message: LockedMessage = field(repr=False)
    entity_path: str = ""


class LockRef(NamedTuple):
    index: int
    generation: int


@dataclass
class _Slot:
    generation: int = 0
    handle: Optional[LockedMessageHandle] = None


class LockRegistryClosed(RuntimeError):
    """Raised when registering into a registry that was already cleared for shutdown."""


class LockRegistry:
    """
    Arena-backed mapping of lock token to LockedMessageHandle.

    A token present in the registry denotes exactly one unsettled message.
    Entries are removed on settlement or when the registry is cleared.
    """

    def __init__(self):
        self._slots: List[_Slot] = []
        self._free: List[int] = []
        self._index: Dict[str, LockRef] = {}
        self._closed = False

    def register(self, handle: LockedMessageHandle) -> LockRef:
        """
        Store ``handle`` under its lock token.

        Raises:
            ValueError: the token is already registered
            LockRegistryClosed: the registry has been cleared for shutdown
        """
        if self._closed:
            raise LockRegistryClosed("lock registry is closed")
        if handle.lock_token in self._index:
            raise ValueError(f"Lock token '{handle.lock_token}' is already registered")

        if self._free:
            index = self._free.pop()
        else:
            index = len(self._slots)
            self._slots.append(_Slot())
        slot = self._slots[index]
        slot.handle = handle
        ref = LockRef(index, slot.generation)
        self._index[handle.lock_token] = ref
        logger.log_lock_operation("register", handle.entity_path, lock_token=handle.lock_token)
        return ref

    def _get(self, ref: LockRef) -> Optional[LockedMessageHandle]:
        if ref.index >= len(self._slots):
            return None
        slot = self._slots[ref.index]
        if slot.generation != ref.generation:
            return None
        return slot.handle

    def resolve(self, lock_token: str) -> Optional[LockedMessageHandle]:
        """Handle for ``lock_token``, or None when unknown or already settled."""
        ref = self._index.get(str(lock_token))
        if ref is None:
            return None
        return self._get(ref)

    def remove(self, lock_token: str) -> Optional[LockedMessageHandle]:
        """Remove and return the handle; the slot's generation is advanced."""
        ref = self._index.pop(str(lock_token), None)
        if ref is None:
            return None
        handle = self._get(ref)
        if handle is None:
            return None
        slot = self._slots[ref.index]
        slot.handle = None
        slot.generation += 1
        self._free.append(ref.index)
        logger.log_lock_operation("remove", handle.entity_path, lock_token=handle.lock_token)
        return handle

    def _handles(self) -> Iterator[LockedMessageHandle]:
        for slot in self._slots:
            if slot.handle is not None:
                yield slot.handle

    def uses_receiver(self, receiver: ServiceBusReceiver) -> bool:
        return any(h.receiver is receiver for h in self._handles())

    def uses_connection(self, connection: ServiceBusConnection) -> bool:
        return any(h.connection is connection for h in self._handles())

    def tokens(self) -> List[str]:
        return list(self._index)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, lock_token: object) -> bool:
        return self.resolve(str(lock_token)) is not None

    async def clear(self) -> int:
        """
        Drop every handle and close the connections they hold.

        Returns the number of handles released. The registry refuses new
        registrations afterwards.
        """
        self._closed = True
        handles = list(self._handles())
        for token in list(self._index):
            self.remove(token)

        connections = []
        for handle in handles:
            if not any(c is handle.connection for c in connections):
                connections.append(handle.connection)
        if connections:
            await asyncio.gather(*(c.close() for c in connections))
        if handles:
            logger.info("Lock registry cleared", released=len(handles),
                        connections_closed=len(connections))
        return len(handles)
