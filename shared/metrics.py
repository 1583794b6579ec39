"""
Shared metrics configuration for the tiered credential broker.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info


class MetricsCollector:
    """Centralized metrics collector for a service.

    Each collector owns its registry so several service instances (tests,
    embedded use) can coexist without duplicate-registration errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
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

        # HTTP metrics
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

        if self.service_name == "broker":
            self._setup_broker_metrics()

    def _setup_broker_metrics(self):
        """Set up broker-specific metrics."""
        self._metrics["quota_decisions_total"] = Counter(
            "quota_decisions_total",
            "Quota admission decisions",
            ["tier", "decision"],
            registry=self.registry
        )

        self._metrics["credential_renewals_total"] = Counter(
            "credential_renewals_total",
            "Shared credential renewals",
            ["tier", "result"],
            registry=self.registry
        )

        self._metrics["credential_renewal_duration_seconds"] = Histogram(
            "credential_renewal_duration_seconds",
            "Credential renewal duration in seconds",
            ["tier"],
            registry=self.registry
        )

        self._metrics["upstream_calls_total"] = Counter(
            "upstream_calls_total",
            "Orchestrated upstream calls by outcome",
            ["tier", "outcome"],
            registry=self.registry
        )

        self._metrics["auth_retries_total"] = Counter(
            "auth_retries_total",
            "Refresh-and-retry attempts after an auth rejection",
            ["tier"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

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

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    @contextmanager
    def time_operation(self, metric_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            if metric_name in self._metrics:
                self._metrics[metric_name].labels(**labels).observe(time.time() - start_time)

    def sample(self, metric_name: str, **labels) -> float:
        """Read the current value of a labelled counter."""
        if not metric_name.endswith("_total"):
            metric_name = f"{metric_name}_total"
        return self.registry.get_sample_value(metric_name, labels) or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
