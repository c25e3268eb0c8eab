"""
Prometheus metrics for the aadpi-terminator operator.

This module provides metrics collection for monitoring reconciliation
passes, identity provider calls and credential lifetimes, plus the small
aiohttp server that exposes them.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

# aiohttp is provided transitively by kopf; the metrics server reuses it
from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_metrics_registry: CollectorRegistry | None = None

RECONCILIATION_TOTAL = Counter(
    "aadpi_terminator_reconciliation_total",
    "Total number of reconciliation passes",
    ["resource_type", "namespace", "name", "result"],
    registry=None,
)

RECONCILIATION_DURATION = Histogram(
    "aadpi_terminator_reconciliation_duration_seconds",
    "Time spent on reconciliation passes",
    ["resource_type", "namespace", "operation"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=None,
)

RECONCILIATION_ERRORS = Counter(
    "aadpi_terminator_reconciliation_errors_total",
    "Total number of reconciliation errors",
    ["resource_type", "namespace", "error_type", "retryable"],
    registry=None,
)

ACTIVE_RESOURCES = Gauge(
    "aadpi_terminator_resources",
    "IdentityRequests by phase",
    ["resource_type", "namespace", "phase"],
    registry=None,
)

IDENTITY_PROVIDER_CALLS = Counter(
    "aadpi_terminator_identity_provider_calls_total",
    "Identity provider operations by result",
    ["operation", "result"],
    registry=None,
)

IDENTITY_PROVIDER_DURATION = Histogram(
    "aadpi_terminator_identity_provider_duration_seconds",
    "Latency of identity provider operations",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=None,
)

ROLE_ASSIGNMENT_RETRIES = Counter(
    "aadpi_terminator_role_assignment_retries_total",
    "Role assignment attempts that failed and were retried",
    ["namespace"],
    registry=None,
)

SECRET_EXPIRATION_TIMESTAMP = Gauge(
    "aadpi_terminator_client_secret_expiration_timestamp_seconds",
    "Unix timestamp at which the generated client secret expires",
    ["namespace", "name"],
    registry=None,
)

CIRCUIT_BREAKER_STATE = Gauge(
    "aadpi_terminator_circuit_breaker_state",
    "Identity provider circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["breaker"],
    registry=None,
)

_ALL_METRICS = [
    RECONCILIATION_TOTAL,
    RECONCILIATION_DURATION,
    RECONCILIATION_ERRORS,
    ACTIVE_RESOURCES,
    IDENTITY_PROVIDER_CALLS,
    IDENTITY_PROVIDER_DURATION,
    ROLE_ASSIGNMENT_RETRIES,
    SECRET_EXPIRATION_TIMESTAMP,
    CIRCUIT_BREAKER_STATE,
]


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()
        for metric in _ALL_METRICS:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsCollector:
    """Collects and manages metrics for the operator."""

    def __init__(self):
        self.registry = get_metrics_registry()

    @asynccontextmanager
    async def track_reconciliation(
        self,
        resource_type: str,
        namespace: str,
        name: str,
        operation: str = "reconcile",
    ):
        """
        Context manager to track one reconciliation pass.

        Args:
            resource_type: Type of resource being reconciled
            namespace: Namespace of the resource
            name: Name of the resource
            operation: Type of operation being performed
        """
        start_time = time.time()
        result = "unknown"

        try:
            yield
            result = "success"
        except Exception as e:
            result = "error"

            retryable = "true" if getattr(e, "retryable", False) else "false"
            RECONCILIATION_ERRORS.labels(
                resource_type=resource_type,
                namespace=namespace,
                error_type=type(e).__name__,
                retryable=retryable,
            ).inc()

            raise
        finally:
            duration = time.time() - start_time

            RECONCILIATION_TOTAL.labels(
                resource_type=resource_type,
                namespace=namespace,
                name=name,
                result=result,
            ).inc()

            RECONCILIATION_DURATION.labels(
                resource_type=resource_type, namespace=namespace, operation=operation
            ).observe(duration)

    def update_resource_status(
        self, resource_type: str, namespace: str, phase: str, count: int = 1
    ):
        ACTIVE_RESOURCES.labels(
            resource_type=resource_type, namespace=namespace, phase=phase
        ).set(count)

    def record_identity_provider_call(
        self, operation: str, success: bool, duration: float
    ) -> None:
        """Record the outcome and latency of one identity provider call."""
        IDENTITY_PROVIDER_CALLS.labels(
            operation=operation, result="success" if success else "error"
        ).inc()
        IDENTITY_PROVIDER_DURATION.labels(operation=operation).observe(duration)

    def record_role_assignment_retry(self, namespace: str) -> None:
        ROLE_ASSIGNMENT_RETRIES.labels(namespace=namespace).inc()

    def update_secret_expiration(
        self, namespace: str, name: str, expires_at: float
    ) -> None:
        SECRET_EXPIRATION_TIMESTAMP.labels(namespace=namespace, name=name).set(
            expires_at
        )

    def clear_secret_expiration(self, namespace: str, name: str) -> None:
        try:
            SECRET_EXPIRATION_TIMESTAMP.remove(namespace, name)
        except KeyError:
            # Gauge never set for this resource
            pass


class MetricsServer:
    """HTTP server for exposing Prometheus metrics."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0"):
        """
        Initialize metrics server.

        Args:
            port: Port to serve metrics on
            host: Host interface to bind to
        """
        self.port = port
        self.host = host
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            metrics_data = generate_latest(get_metrics_registry())
            return Response(body=metrics_data, content_type=CONTENT_TYPE_LATEST)
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _ready_handler(self, request: Request) -> Response:
        """Handle /ready endpoint for readiness probes."""
        from .health import HealthChecker

        health_checker = HealthChecker()
        results: dict[str, Any] = {
            "kubernetes_api": await health_checker.check_kubernetes_api(),
            "crds_installed": await health_checker.check_crds_installed(),
        }
        ready = all(result.status == "healthy" for result in results.values())
        return json_response(
            {
                "status": "ready" if ready else "not_ready",
                "timestamp": time.time(),
                "checks": {name: result.status for name, result in results.items()},
            },
            status=200 if ready else 503,
        )

    async def _healthz_handler(self, request: Request) -> Response:
        """Handle /healthz endpoint for Kubernetes compatibility."""
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        try:
            self.runner = AppRunner(self.app)
            await self.runner.setup()

            self.site = TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"Metrics server started on {self.host}:{self.port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")
            raise

    async def stop(self) -> None:
        """Stop the metrics server."""
        try:
            if self.site:
                await self.site.stop()
                self.site = None

            if self.runner:
                await self.runner.cleanup()
                self.runner = None

            logger.info("Metrics server stopped")
        except Exception as e:
            logger.error(f"Error stopping metrics server: {e}")


# Global metrics collector instance
metrics_collector = MetricsCollector()
