"""
Message Monitor

Continuous, non-destructive watch over an entity. The monitor peeks from
one past the highest sequence number it has seen and emits only newer
messages, so every message is reported at most once. The connection and
management channel stay open between polls and are rebuilt after an error.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, List, Optional

from .config import ClientConfig, MonitorSettings
from .connection import ClientFactory, ServiceBusConnection, open_connection
from .exceptions import ServiceBusError
from .logging_utils import StructuredLogger
from .management import ManagementChannel
from .metrics import ClientMetrics, get_metrics
from .models import EntityDescriptor, ParsedMessage


logger = StructuredLogger('sbexplorer.monitor')

MessageCallback = Callable[[ParsedMessage], Any]
ErrorCallback = Callable[[Exception], Any]
StoppedCallback = Callable[["MessageMonitor"], Any]


class MonitorState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    PEEKING = "peeking"
    WAITING = "waiting"
    ERROR = "error"
    BACKOFF = "backoff"
    STOPPED = "stopped"


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class MessageMonitor:
    """
    Poll an entity for new messages until stopped.

    Usage:
        monitor = MessageMonitor(namespace, token, entity, on_message=print)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        namespace: str,
        token: str,
        entity: EntityDescriptor,
        on_message: MessageCallback,
        on_error: Optional[ErrorCallback] = None,
        config: Optional[ClientConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional[ClientMetrics] = None,
        on_stopped: Optional[StoppedCallback] = None,
    ):
        self.namespace = namespace
        self.token = token
        self.entity = entity
        self.entity_path = entity.entity_path
        self.on_message = on_message
        self.on_error = on_error
        self.on_stopped = on_stopped
        self.config = config or ClientConfig()
        self.client_factory = client_factory
        self.metrics = metrics or get_metrics()
        self.state = MonitorState.IDLE
        self.watermark = 0
        self.emitted = 0
        self._connection: Optional[ServiceBusConnection] = None
        self._management: Optional[ManagementChannel] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def settings(self) -> MonitorSettings:
        return self.config.monitor

    @property
    def is_running(self) -> bool:
        return self.state not in (MonitorState.IDLE, MonitorState.STOPPED)

    def _set_state(self, state: MonitorState) -> None:
        if state != self.state:
            logger.debug("Monitor state change", entity_path=self.entity_path,
                         from_state=self.state.value, to_state=state.value)
        self.state = state

    async def _report_error(self, error: Exception) -> None:
        """Hand ``error`` to the error callback; a failing callback is logged, not raised."""
        if self.on_error is None:
            return
        try:
            await _invoke(self.on_error, error)
        except Exception as e:
            logger.log_error("monitor_error_callback", type(e).__name__, str(e),
                             entity_path=self.entity_path, original_error=type(error).__name__)

    async def _notify_stopped(self) -> None:
        if self.on_stopped is None:
            return
        try:
            await _invoke(self.on_stopped, self)
        except Exception as e:
            logger.log_error("monitor_stopped_callback", type(e).__name__, str(e),
                             entity_path=self.entity_path)

    async def start(self) -> None:
        """
        Connect, record the current watermark and schedule the first poll.

        Raises:
            ServiceBusError: the initial connect or peek failed (after the
                error callback was invoked)
        """
        if self.state != MonitorState.IDLE:
            raise RuntimeError(f"monitor cannot start from state '{self.state.value}'")
        try:
            await self._connect()
            self._set_state(MonitorState.PEEKING)
            initial = await self._management.peek(0, self.settings.initial_peek_count)
        except ServiceBusError as e:
            await self._disconnect()
            self._set_state(MonitorState.STOPPED)
            logger.log_error("monitor_start", type(e).__name__, str(e), entity_path=self.entity_path)
            await self._report_error(e)
            await self._notify_stopped()
            raise

        for message in initial:
            self.watermark = max(self.watermark, message.sequence_number)
        self._set_state(MonitorState.WAITING)
        logger.log_operation("monitor_started", self.entity_path, watermark=self.watermark)
        self._task = asyncio.create_task(self._run(self.settings.first_poll_delay))

    async def stop(self) -> None:
        """Cancel the scheduled poll and release the connection."""
        if self.state == MonitorState.STOPPED:
            return
        self._set_state(MonitorState.STOPPED)
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Monitor poll task cancelled", entity_path=self.entity_path)
            except Exception as e:
                logger.log_error("monitor_task", type(e).__name__, str(e), entity_path=self.entity_path)
        await self._disconnect()
        logger.log_operation("monitor_stopped", self.entity_path, emitted=self.emitted,
                             watermark=self.watermark)
        await self._notify_stopped()

    async def _connect(self) -> None:
        self._set_state(MonitorState.CONNECTING)
        self._connection = open_connection(self.namespace, self.token, self.config, self.client_factory)
        management = ManagementChannel(self._connection, self.entity, self.config)
        try:
            await management.open()
        except BaseException:
            await self._disconnect()
            raise
        self._management = management

    async def _disconnect(self) -> None:
        management, self._management = self._management, None
        connection, self._connection = self._connection, None
        if management is not None:
            await management.close()
        if connection is not None:
            await connection.close()

    async def _run(self, delay: float) -> None:
        while self.state != MonitorState.STOPPED:
            await asyncio.sleep(delay)
            if self.state == MonitorState.STOPPED:
                return
            try:
                found = await self.poll()
                delay = self.settings.active_interval if found else self.settings.idle_interval
                self._set_state(MonitorState.WAITING)
            except Exception as e:
                self._set_state(MonitorState.ERROR)
                logger.log_error("monitor_poll", type(e).__name__, str(e), entity_path=self.entity_path)
                self.metrics.track_error("monitor", type(e).__name__)
                try:
                    await self._disconnect()
                except Exception as close_error:
                    logger.log_error("monitor_disconnect", type(close_error).__name__, str(close_error),
                                     entity_path=self.entity_path)
                await self._report_error(e)
                if self.state == MonitorState.STOPPED:
                    return
                self._set_state(MonitorState.BACKOFF)
                delay = self.settings.error_backoff

    async def poll(self) -> List[ParsedMessage]:
        """Run one poll cycle and return the messages that were emitted."""
        if self._management is None or not self._management.is_open:
            await self._disconnect()
            await self._connect()
        self._set_state(MonitorState.PEEKING)
        messages = await self._management.peek(self.watermark + 1, self.settings.poll_count)
        self.metrics.track_peeked(self.entity_path, len(messages))

        emitted = []
        for message in messages:
            if message.sequence_number <= self.watermark:
                continue
            self.watermark = message.sequence_number
            emitted.append(message)
            self.emitted += 1
            await _invoke(self.on_message, message)
        return emitted
