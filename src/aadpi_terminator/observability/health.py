"""
Health check utilities for the aadpi-terminator operator.

Readiness depends on the Kubernetes API, the operator's own CRD, and the
ability to acquire an access token from Azure AD.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from aadpi_terminator.constants import API_GROUP, IDENTITY_REQUEST_PLURAL

logger = logging.getLogger(__name__)

REQUIRED_CRDS = [f"{IDENTITY_REQUEST_PLURAL}.{API_GROUP}"]


@dataclass
class HealthCheckResult:
    """Result of a health check operation."""

    name: str
    status: str  # "healthy", "unhealthy", "degraded", "unknown"
    message: str
    details: dict[str, Any] | None = None
    duration: float = 0.0
    timestamp: float = 0.0


class HealthChecker:
    """Performs health checks for the operator."""

    def __init__(self, k8s_client: client.ApiClient | None = None, authorizer=None):
        """
        Initialize health checker.

        Args:
            k8s_client: Kubernetes API client
            authorizer: Optional Authorizer; when given, token acquisition is checked
        """
        self.k8s_client = k8s_client
        self.authorizer = authorizer

    def _api_client(self) -> client.ApiClient:
        if not self.k8s_client:
            from ..utils.kubernetes import get_kubernetes_client

            self.k8s_client = get_kubernetes_client()
        return self.k8s_client

    async def check_all(self) -> dict[str, HealthCheckResult]:
        """Run all health checks."""
        checks = {
            "kubernetes_api": self.check_kubernetes_api(),
            "crds_installed": self.check_crds_installed(),
        }
        if self.authorizer is not None:
            checks["identity_provider_auth"] = self.check_identity_provider_auth()

        results = {}
        for name, check_coro in checks.items():
            try:
                results[name] = await check_coro
            except Exception as e:
                results[name] = HealthCheckResult(
                    name=name,
                    status="unhealthy",
                    message=f"Health check failed: {e}",
                    timestamp=time.time(),
                )

        return results

    async def check_kubernetes_api(self) -> HealthCheckResult:
        """Check Kubernetes API connectivity."""
        start_time = time.time()

        try:
            core_api = client.CoreV1Api(self._api_client())
            core_api.list_namespace(limit=1, timeout_seconds=5)
            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="healthy",
                message="Kubernetes API is accessible",
                details={"response_time_ms": round(duration * 1000, 2)},
                duration=duration,
                timestamp=time.time(),
            )
        except ApiException as e:
            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Kubernetes API error: {e.reason}",
                details={"status_code": e.status},
                duration=duration,
                timestamp=time.time(),
            )
        except Exception as e:
            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Failed to connect to Kubernetes API: {e}",
                duration=duration,
                timestamp=time.time(),
            )

    async def check_crds_installed(self) -> HealthCheckResult:
        """Check that the IdentityRequest CRD is installed."""
        start_time = time.time()

        try:
            api_extensions = client.ApiextensionsV1Api(self._api_client())
            missing_crds = []
            for crd_name in REQUIRED_CRDS:
                try:
                    api_extensions.read_custom_resource_definition(name=crd_name)
                except ApiException as e:
                    if e.status == 404:
                        missing_crds.append(crd_name)
                    else:
                        raise

            duration = time.time() - start_time
            if missing_crds:
                return HealthCheckResult(
                    name="crds_installed",
                    status="unhealthy",
                    message=f"Missing required CRDs: {', '.join(missing_crds)}",
                    details={"missing": missing_crds},
                    duration=duration,
                    timestamp=time.time(),
                )
            return HealthCheckResult(
                name="crds_installed",
                status="healthy",
                message="All required CRDs are installed",
                duration=duration,
                timestamp=time.time(),
            )
        except Exception as e:
            return HealthCheckResult(
                name="crds_installed",
                status="unhealthy",
                message=f"Failed to check CRDs: {e}",
                duration=time.time() - start_time,
                timestamp=time.time(),
            )

    async def check_identity_provider_auth(self) -> HealthCheckResult:
        """Check that a Microsoft Graph token can be acquired (served from cache when warm)."""
        start_time = time.time()
        try:
            await self.authorizer.get_graph_token()
            return HealthCheckResult(
                name="identity_provider_auth",
                status="healthy",
                message="Access token available",
                duration=time.time() - start_time,
                timestamp=time.time(),
            )
        except Exception as e:
            return HealthCheckResult(
                name="identity_provider_auth",
                status="unhealthy",
                message=f"Token acquisition failed: {type(e).__name__}",
                duration=time.time() - start_time,
                timestamp=time.time(),
            )

    def get_overall_health(self, results: dict[str, HealthCheckResult]) -> str:
        """Determine overall health status from individual check results."""
        if not results:
            return "unknown"

        statuses = [result.status for result in results.values()]

        if "unhealthy" in statuses:
            return "unhealthy"
        elif "degraded" in statuses or "unknown" in statuses:
            return "degraded"
        else:
            return "healthy"
