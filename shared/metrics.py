"""
Shared metrics configuration for ClawCloud services.
"""

import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Metrics collector for one service.

    Each collector owns its registry unless one is passed in, so several
    services (or test fixtures) can live in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "ledger":
            self._setup_ledger_metrics()
        elif self.service_name == "provisioner":
            self._setup_provisioner_metrics()

    def _setup_ledger_metrics(self):
        """Set up ledger-specific metrics."""
        self._metrics["ledger_operations_total"] = Counter(
            "ledger_operations_total",
            "Total ledger operations",
            ["operation", "outcome"],
            registry=self.registry
        )

        self._metrics["entitlements_active"] = Gauge(
            "entitlements_active",
            "Entitlement records currently held by the ledger",
            registry=self.registry
        )

    def _setup_provisioner_metrics(self):
        """Set up provisioner-specific metrics."""
        self._metrics["events_observed_total"] = Counter(
            "events_observed_total",
            "Ledger events delivered to the reconciler",
            ["kind"],
            registry=self.registry
        )

        self._metrics["events_duplicate_total"] = Counter(
            "events_duplicate_total",
            "Ledger events dropped as duplicates",
            ["kind"],
            registry=self.registry
        )

        self._metrics["reconciliations_total"] = Counter(
            "reconciliations_total",
            "Reconciliation attempts by outcome",
            ["kind", "outcome"],
            registry=self.registry
        )

        self._metrics["reconciliation_duration_seconds"] = Histogram(
            "reconciliation_duration_seconds",
            "Reconciliation duration in seconds",
            ["kind"],
            registry=self.registry
        )

        self._metrics["cloud_calls_total"] = Counter(
            "cloud_calls_total",
            "Cloud adapter calls",
            ["provider", "operation", "outcome"],
            registry=self.registry
        )

        self._metrics["ledger_writebacks_total"] = Counter(
            "ledger_writebacks_total",
            "Ledger write-backs by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["reconciliations_in_flight"] = Gauge(
            "reconciliations_in_flight",
            "Reconciliations currently running",
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in Prometheus exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)

    def adjust_gauge(self, metric_name: str, amount: float):
        """Increment or decrement an unlabelled gauge."""
        if metric_name in self._metrics:
            self._metrics[metric_name].inc(amount)

    def sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read the current value of a counter or gauge sample."""
        return self.registry.get_sample_value(metric_name, labels or None)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
