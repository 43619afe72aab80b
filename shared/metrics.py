"""
Shared metrics configuration for the LLM protocol gateway.
"""

from typing import Dict, Any, Optional
import time

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""

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

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_gateway_metrics()

    def _setup_gateway_metrics(self):
        """Set up gateway-specific metrics."""
        self._metrics["upstream_dispatch_total"] = Counter(
            "upstream_dispatch_total",
            "Total upstream dispatches",
            ["model", "outcome"],
            registry=self.registry
        )

        self._metrics["upstream_dispatch_duration_seconds"] = Histogram(
            "upstream_dispatch_duration_seconds",
            "Time from admission to upstream response headers",
            ["model"],
            registry=self.registry
        )

        self._metrics["admission_rejections_total"] = Counter(
            "admission_rejections_total",
            "Requests rejected by the admission controller",
            registry=self.registry
        )

        self._metrics["credential_refresh_total"] = Counter(
            "credential_refresh_total",
            "Upstream credential refresh attempts",
            ["outcome"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def render(self) -> bytes:
        """Render the registry in Prometheus text exposition format."""
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

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_dispatch(self, model: str, start_timestamp: float, success: bool) -> None:
        """Dispatch hook: called with (model, start timestamp, success) after every dispatch."""
        outcome = "success" if success else "failure"
        self._metrics["upstream_dispatch_total"].labels(model=model, outcome=outcome).inc()
        self._metrics["upstream_dispatch_duration_seconds"].labels(model=model).observe(
            max(0.0, time.time() - start_timestamp)
        )

    def record_admission_rejection(self) -> None:
        """Count a request rejected by the admission controller."""
        self._metrics["admission_rejections_total"].inc()

    def record_credential_refresh(self, outcome: str) -> None:
        """Count a credential refresh attempt by outcome."""
        self._metrics["credential_refresh_total"].labels(outcome=outcome).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
