"""
Service Bus Explorer Metrics Collection

Prometheus metrics for explorer operations: message counts per operation,
operation outcomes and durations.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

from typing import Optional
import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
)


class ClientMetrics:
    """
    Prometheus metrics collector for explorer operations.

    Each instance owns a private registry unless one is supplied, so the
    collector can be recreated freely (tests, multiple clients).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collectors.

        Args:
            registry: Prometheus registry (a private one if None)
        """
        self.registry = registry if registry is not None else CollectorRegistry()

        self.operations_total = Counter(
            'sbexplorer_operations_total',
            'Total explorer operations by outcome',
            ['operation', 'outcome'],
            registry=self.registry
        )

        self.messages_peeked_total = Counter(
            'sbexplorer_messages_peeked_total',
            'Total messages peeked',
            ['entity_path'],
            registry=self.registry
        )

        self.messages_locked_total = Counter(
            'sbexplorer_messages_locked_total',
            'Total messages received in peek-lock mode',
            ['entity_path'],
            registry=self.registry
        )

        self.messages_settled_total = Counter(
            'sbexplorer_messages_settled_total',
            'Total settlement attempts by outcome',
            ['disposition', 'result'],
            registry=self.registry
        )

        self.messages_sent_total = Counter(
            'sbexplorer_messages_sent_total',
            'Total messages sent',
            ['entity_path'],
            registry=self.registry
        )

        self.messages_purged_total = Counter(
            'sbexplorer_messages_purged_total',
            'Total messages deleted by purge',
            ['entity_path', 'strategy'],
            registry=self.registry
        )

        self.errors_total = Counter(
            'sbexplorer_errors_total',
            'Total errors',
            ['operation', 'error_type'],
            registry=self.registry
        )

        self.active_locks = Gauge(
            'sbexplorer_active_locks',
            'Locked message handles awaiting settlement',
            registry=self.registry
        )

        self.operation_duration_seconds = Histogram(
            'sbexplorer_operation_duration_seconds',
            'Explorer operation duration',
            ['operation'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry
        )

    def track_operation(self, operation: str, outcome: str, duration: Optional[float] = None) -> None:
        """
        Track a finished operation.

        Args:
            operation: Operation name (peek, purge, ...)
            outcome: "success" or "failure"
            duration: Operation duration in seconds
        """
        self.operations_total.labels(operation=operation, outcome=outcome).inc()
        if duration is not None:
            self.operation_duration_seconds.labels(operation=operation).observe(duration)

    @contextmanager
    def time_operation(self, operation: str):
        """Record outcome and duration of the enclosed block."""
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.track_operation(operation, "failure", time.perf_counter() - start)
            self.track_error(operation, type(e).__name__)
            raise
        self.track_operation(operation, "success", time.perf_counter() - start)

    def track_peeked(self, entity_path: str, count: int) -> None:
        if count:
            self.messages_peeked_total.labels(entity_path=entity_path).inc(count)

    def track_locked(self, entity_path: str, count: int) -> None:
        if count:
            self.messages_locked_total.labels(entity_path=entity_path).inc(count)

    def track_settled(self, disposition: str, success: bool) -> None:
        result = "success" if success else "failure"
        self.messages_settled_total.labels(disposition=disposition, result=result).inc()

    def track_sent(self, entity_path: str, count: int = 1) -> None:
        self.messages_sent_total.labels(entity_path=entity_path).inc(count)

    def track_purged(self, entity_path: str, strategy: str, count: int) -> None:
        if count:
            self.messages_purged_total.labels(entity_path=entity_path, strategy=strategy).inc(count)

    def track_error(self, operation: str, error_type: str) -> None:
        """
        Track error occurrence.

        Args:
            operation: Operation that failed (peek, receive_and_lock, etc.)
            error_type: Exception class name
        """
        self.errors_total.labels(operation=operation, error_type=error_type).inc()

    def update_active_locks(self, count: int) -> None:
        self.active_locks.set(count)

    def generate_metrics(self) -> bytes:
        """
        Generate Prometheus metrics output.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Global metrics instance
_metrics: Optional[ClientMetrics] = None


def get_metrics() -> ClientMetrics:
    """
    Get global metrics instance (singleton).

    Returns:
        ClientMetrics instance
    """
    global _metrics
    if _metrics is None:
        _metrics = ClientMetrics()
    return _metrics


def reset_metrics() -> None:
    """Reset global metrics instance (for testing)."""
    global _metrics
    _metrics = None
