"""
Message Search

Background, non-destructive scan of an entity (or its dead-letter
sub-queue) for messages whose body, message id or subject contains the
given text. The scan pages through peeks on one connection and ends when
the entity is exhausted, the scan limit or match cap is reached, or the
caller stops it.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
from typing import Callable, List, Optional

from .config import ClientConfig, SearchSettings
from .connection import ClientFactory, open_connection
from .logging_utils import StructuredLogger
from .management import ManagementChannel
from .metrics import ClientMetrics, get_metrics
from .models import EntityDescriptor, SearchFilter, SearchResult


logger = StructuredLogger('sbexplorer.search')

# (scanned so far, matches so far, sequence numbers newly matched on this page)
SearchProgressCallback = Callable[[int, int, List[int]], None]


class SearchOperation:
    """
    Handle for a running search.

    Counters only grow while the search runs. Awaiting the handle yields the
    SearchResult or raises the error that ended the scan.
    """

    def __init__(self, entity_path: str, search_filter: SearchFilter,
                 on_progress: Optional[SearchProgressCallback] = None):
        self.entity_path = entity_path
        self.filter = search_filter
        self.scanned_count = 0
        self.matching_sequence_numbers: List[int] = []
        self._on_progress = on_progress
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def match_count(self) -> int:
        return len(self.matching_sequence_numbers)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        """Ask the scan to end after the page in flight."""
        if not self._stop_requested:
            logger.info("Search stop requested", entity_path=self.entity_path,
                        scanned=self.scanned_count, matches=self.match_count)
        self._stop_requested = True

    def add_done_callback(self, callback: Callable[["SearchOperation"], None]) -> None:
        """Call ``callback`` with this handle once the scan has ended."""
        if self._task is None:
            raise RuntimeError("search has not been started")
        self._task.add_done_callback(lambda _task: callback(self))

    def result(self) -> SearchResult:
        return SearchResult(
            scanned_count=self.scanned_count,
            match_count=self.match_count,
            matching_sequence_numbers=list(self.matching_sequence_numbers),
            stopped=self._stop_requested,
        )

    def _page(self, scanned: int, new_matches: List[int]) -> None:
        self.scanned_count += scanned
        self.matching_sequence_numbers.extend(new_matches)
        if self._on_progress is not None:
            self._on_progress(self.scanned_count, self.match_count, list(new_matches))

    async def wait(self) -> SearchResult:
        if self._task is None:
            raise RuntimeError("search has not been started")
        return await self._task

    def __await__(self):
        return self.wait().__await__()


class SearchEngine:
    """Starts message searches against one namespace."""

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
    def settings(self) -> SearchSettings:
        return self.config.search

    def start(
        self,
        entity: EntityDescriptor,
        search_filter: SearchFilter,
        on_progress: Optional[SearchProgressCallback] = None,
        max_matches: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> SearchOperation:
        """Begin scanning ``entity`` in the background and return the handle."""
        max_matches = self.settings.max_matches if max_matches is None else max_matches
        max_messages = self.settings.max_messages if max_messages is None else max_messages
        if max_matches < 1 or max_messages < 1:
            raise ValueError("max_matches and max_messages must be at least 1")

        operation = SearchOperation(entity.entity_path, search_filter, on_progress)
        operation._task = asyncio.create_task(self._run(entity, operation, max_matches, max_messages))
        logger.log_operation("search_started", entity.entity_path, filter=search_filter.describe(),
                             max_matches=max_matches, max_messages=max_messages)
        return operation

    async def _run(self, entity: EntityDescriptor, operation: SearchOperation,
                   max_matches: int, max_messages: int) -> SearchResult:
        entity_path = entity.entity_path
        page_size = self.settings.page_size
        next_sequence = 0

        with self.metrics.time_operation("search"):
            connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
            try:
                async with ManagementChannel(connection, entity, self.config) as management:
                    while not operation.stop_requested:
                        remaining = max_messages - operation.scanned_count
                        if remaining <= 0:
                            break
                        page = await management.peek(next_sequence, min(page_size, remaining))
                        if not page:
                            break
                        self.metrics.track_peeked(entity_path, len(page))

                        room = max_matches - operation.match_count
                        new_matches = [
                            m.sequence_number for m in page if operation.filter.matches(m)
                        ][:room]
                        operation._page(len(page), new_matches)
                        next_sequence = page[-1].sequence_number + 1

                        if operation.match_count >= max_matches:
                            break
            finally:
                await connection.close()

        result = operation.result()
        logger.log_operation("search_finished", entity_path, scanned=result.scanned_count,
                             matches=result.match_count, stopped=result.stopped)
        return result
