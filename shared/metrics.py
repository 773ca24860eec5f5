"""
Shared metrics configuration for the Membership Access Layer.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
from contextlib import contextmanager


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so several service instances (tests,
    workers) can coexist in one process.
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

        if self.service_name == "access":
            self._setup_access_metrics()

    def _setup_access_metrics(self):
        """Set up access-decision metrics."""
        self._metrics["access_decisions_total"] = Counter(
            "access_decisions_total",
            "Total access decisions",
            ["mode", "allowed", "reason"],
            registry=self.registry
        )

        self._metrics["access_decision_duration_seconds"] = Histogram(
            "access_decision_duration_seconds",
            "Guard duration in seconds, store round-trips included",
            ["guard"],
            registry=self.registry
        )

        self._metrics["access_store_failures_total"] = Counter(
            "access_store_failures_total",
            "Entitlement store lookups that failed or timed out",
            ["operation"],
            registry=self.registry
        )

        self._metrics["access_audit_failures_total"] = Counter(
            "access_audit_failures_total",
            "Audit records that could not be written",
            ["sink"],
            registry=self.registry
        )

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

    def record_decision(self, mode: str, allowed: bool, reason: str):
        """Record one access decision."""
        self.increment_counter(
            "access_decisions_total",
            mode=mode,
            allowed=str(allowed).lower(),
            reason=reason
        )

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
            self._metrics[metric_name].labels(**labels).inc()

    def sample_value(self, metric_name: str, **labels) -> Optional[float]:
        """Read back a sample, mostly for tests and debug endpoints."""
        return self.registry.get_sample_value(metric_name, labels)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
