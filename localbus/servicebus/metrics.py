"""
Service Bus Metrics Collection

Prometheus metrics for message throughput, settlement outcomes, errors,
and current entity depth in the in-memory namespace.

Author: LocalBus Team
Date: 2026-03-05
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class ServiceBusMetrics:
    """
    Prometheus metrics collector for one namespace.

    Each namespace owns its own registry so several in-memory namespaces
    (one per test, typically) can coexist in a process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        entity_labels = ['entity_type', 'entity_name']

        self.messages_sent_total = Counter(
            'servicebus_messages_sent_total',
            'Total messages accepted by an entity',
            entity_labels,
            registry=self.registry
        )
        self.messages_received_total = Counter(
            'servicebus_messages_received_total',
            'Total messages handed to receivers',
            entity_labels,
            registry=self.registry
        )
        self.messages_completed_total = Counter(
            'servicebus_messages_completed_total',
            'Total messages completed',
            entity_labels,
            registry=self.registry
        )
        self.messages_abandoned_total = Counter(
            'servicebus_messages_abandoned_total',
            'Total messages abandoned',
            entity_labels,
            registry=self.registry
        )
        self.messages_deferred_total = Counter(
            'servicebus_messages_deferred_total',
            'Total messages deferred',
            entity_labels,
            registry=self.registry
        )
        self.messages_deadlettered_total = Counter(
            'servicebus_messages_deadlettered_total',
            'Total messages dead-lettered',
            entity_labels + ['reason'],
            registry=self.registry
        )
        self.duplicates_dropped_total = Counter(
            'servicebus_duplicates_dropped_total',
            'Messages dropped by duplicate detection',
            entity_labels,
            registry=self.registry
        )
        self.errors_total = Counter(
            'servicebus_errors_total',
            'Total errors raised by broker operations',
            ['operation', 'error_type'],
            registry=self.registry
        )

        self.active_messages = Gauge(
            'servicebus_active_messages',
            'Current active messages',
            entity_labels,
            registry=self.registry
        )
        self.active_locks = Gauge(
            'servicebus_active_locks',
            'Current message locks',
            entity_labels,
            registry=self.registry
        )
        self.entity_count = Gauge(
            'servicebus_entity_count',
            'Total entities',
            ['entity_type'],
            registry=self.registry
        )

        self.message_size_bytes = Histogram(
            'servicebus_message_size_bytes',
            'Message size in bytes',
            entity_labels,
            buckets=[100, 1000, 10000, 50000, 100000, 250000],
            registry=self.registry
        )
        self.filter_evaluation_seconds = Histogram(
            'servicebus_filter_evaluation_seconds',
            'Rule evaluation duration per message and subscription',
            buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1],
            registry=self.registry
        )

    def track_message_sent(self, entity_type: str, entity_name: str, size_bytes: int) -> None:
        self.messages_sent_total.labels(entity_type=entity_type, entity_name=entity_name).inc()
        self.message_size_bytes.labels(entity_type=entity_type, entity_name=entity_name).observe(size_bytes)

    def track_message_received(self, entity_type: str, entity_name: str, count: int = 1) -> None:
        self.messages_received_total.labels(entity_type=entity_type, entity_name=entity_name).inc(count)

    def track_message_completed(self, entity_type: str, entity_name: str) -> None:
        self.messages_completed_total.labels(entity_type=entity_type, entity_name=entity_name).inc()

    def track_message_abandoned(self, entity_type: str, entity_name: str) -> None:
        self.messages_abandoned_total.labels(entity_type=entity_type, entity_name=entity_name).inc()

    def track_message_deferred(self, entity_type: str, entity_name: str) -> None:
        self.messages_deferred_total.labels(entity_type=entity_type, entity_name=entity_name).inc()

    def track_message_deadlettered(self, entity_type: str, entity_name: str, reason: str) -> None:
        self.messages_deadlettered_total.labels(
            entity_type=entity_type,
            entity_name=entity_name,
            reason=reason
        ).inc()

    def track_duplicate_dropped(self, entity_type: str, entity_name: str) -> None:
        self.duplicates_dropped_total.labels(entity_type=entity_type, entity_name=entity_name).inc()

    def track_error(self, operation: str, error_type: str) -> None:
        self.errors_total.labels(operation=operation, error_type=error_type).inc()

    def update_depth(self, entity_type: str, entity_name: str, active: int, locked: int) -> None:
        """Set the active-message and lock gauges for an entity."""
        self.active_messages.labels(entity_type=entity_type, entity_name=entity_name).set(active)
        self.active_locks.labels(entity_type=entity_type, entity_name=entity_name).set(locked)

    def update_entity_count(self, entity_type: str, count: int) -> None:
        self.entity_count.labels(entity_type=entity_type).set(count)

    def track_filter_evaluation(self, duration: float) -> None:
        self.filter_evaluation_seconds.observe(duration)

    def get_sample_value(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Read back a single sample, mostly for tests and the CLI."""
        return self.registry.get_sample_value(name, labels or {})

    def generate_metrics(self) -> bytes:
        """Metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST
