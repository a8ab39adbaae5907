"""
Shared metrics configuration for the Spark Cloud SDK.

Each client owns its own ``CollectorRegistry`` so several clients can live in
one process (and in one test session) without duplicate-timeseries errors.
"""

import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class SparkCloudMetrics:
    """Metrics collector for the event subsystem."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up event subsystem metrics."""
        self._metrics["events_received_total"] = Counter(
            "spark_events_received_total",
            "Total events parsed from stream connections",
            ["scope"],
            registry=self.registry
        )

        self._metrics["parse_errors_total"] = Counter(
            "spark_parse_errors_total",
            "Total malformed stream frames",
            ["scope"],
            registry=self.registry
        )

        self._metrics["reconnects_total"] = Counter(
            "spark_stream_reconnects_total",
            "Total stream reconnection attempts",
            ["scope"],
            registry=self.registry
        )

        self._metrics["deliveries_total"] = Counter(
            "spark_deliveries_total",
            "Total handler invocations",
            ["kind"],
            registry=self.registry
        )

        self._metrics["handler_errors_total"] = Counter(
            "spark_handler_errors_total",
            "Total exceptions raised by subscription handlers",
            registry=self.registry
        )

        self._metrics["active_subscriptions"] = Gauge(
            "spark_active_subscriptions",
            "Number of registered subscriptions",
            registry=self.registry
        )

        self._metrics["active_connections"] = Gauge(
            "spark_active_connections",
            "Number of open stream connections",
            registry=self.registry
        )

        self._metrics["publish_total"] = Counter(
            "spark_publish_total",
            "Total publish calls",
            ["status"],
            registry=self.registry
        )

        self._metrics["publish_duration_seconds"] = Histogram(
            "spark_publish_duration_seconds",
            "Publish request duration in seconds",
            registry=self.registry
        )

    def record_event(self, scope: str):
        self._metrics["events_received_total"].labels(scope=scope).inc()

    def record_parse_error(self, scope: str):
        self._metrics["parse_errors_total"].labels(scope=scope).inc()

    def record_reconnect(self, scope: str):
        self._metrics["reconnects_total"].labels(scope=scope).inc()

    def record_delivery(self, kind: str):
        """Record a handler invocation; ``kind`` is ``event`` or ``error``."""
        self._metrics["deliveries_total"].labels(kind=kind).inc()

    def record_handler_error(self):
        self._metrics["handler_errors_total"].inc()

    def set_active_subscriptions(self, value: int):
        self._metrics["active_subscriptions"].set(value)

    def set_active_connections(self, value: int):
        self._metrics["active_connections"].set(value)

    def record_publish(self, status: str):
        self._metrics["publish_total"].labels(status=status).inc()

    @contextmanager
    def time_publish(self):
        """Context manager to time a publish request."""
        start_time = time.time()
        try:
            yield
        finally:
            self._metrics["publish_duration_seconds"].observe(time.time() - start_time)

    def sample(self, metric_name: str, **labels) -> float:
        """Read the current value of a metric sample, 0.0 if never recorded."""
        value = self.registry.get_sample_value(metric_name, labels or None)
        return value or 0.0
