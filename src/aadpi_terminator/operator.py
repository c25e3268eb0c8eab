#!/usr/bin/env python3
"""
aadpi-terminator - Main entry point for the kopf-based Azure AD pod identity operator.

For every AzureIdentityTerminator the operator provisions an Azure AD
application, its service principal and a Reader role assignment on the
cluster's node resource group, and wires them into an aad-pod-identity
AzureIdentity and AzureIdentityBinding. Deleting the resource removes all of it.

Usage:
    python -m aadpi_terminator.operator
    # Or with kopf directly:
    kopf run -m aadpi_terminator.operator --all-namespaces

Environment Variables:
    AZURE_TENANT_ID / AZURE_SUBSCRIPTION_ID: Tenant and subscription to manage
    AZURE_CLIENT_ID / AZURE_CLIENT_SECRET: Operator credentials (client_secret mode)
    AZURE_AUTH_MODE: client_secret, device_code or default
    AADPI_TERMINATOR_NAMESPACES: Comma-separated list of namespaces to watch
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

import logging
import sys

import kopf

from aadpi_terminator.errors import ConfigurationError

# Importing the handler module registers its decorators with kopf
from aadpi_terminator.handlers import identity  # noqa: F401
from aadpi_terminator.observability.health import HealthChecker
from aadpi_terminator.observability.logging import setup_structured_logging
from aadpi_terminator.observability.metrics import MetricsServer
from aadpi_terminator.observability.tracing import setup_tracing, shutdown_tracing
from aadpi_terminator.services.identity_lifecycle import IdentityLifecycle
from aadpi_terminator.services.identity_reconciler import IdentityReconciler
from aadpi_terminator.settings import settings as operator_settings
from aadpi_terminator.utils.authorizer import Authorizer
from aadpi_terminator.utils.circuit_breaker import IdentityProviderCircuitBreaker
from aadpi_terminator.utils.identity_provider import GraphIdentityProviderClient
from aadpi_terminator.utils.kubernetes import get_kubernetes_client
from aadpi_terminator.utils.resource_store import KubernetesResourceStore


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level.upper(),
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
    )


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    Configures kopf and builds the process-wide collaborators once:
    - Kubernetes client and resource store
    - Authorizer with its token cache
    - Identity provider client behind a circuit breaker
    - Reconciler, stored in memo for the handlers
    - Metrics and health endpoints
    """
    logging.info("Starting aadpi-terminator...")
    settings.watching.reconnect_backoff = 1.0
    settings.execution.max_workers = 20
    # kopf handler progress lives in annotations under the operator group
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix="azidterminator.io"
    )
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix="azidterminator.io"
    )

    watched_namespaces = operator_settings.watched_namespaces
    if watched_namespaces:
        logging.info(f"Watching namespaces: {', '.join(watched_namespaces)}")
    else:
        logging.info("Watching all namespaces (cluster-wide mode)")

    try:
        if not operator_settings.azure_subscription_id:
            raise ConfigurationError(
                "AZURE_SUBSCRIPTION_ID is required to scope role assignments"
            )
        authorizer = Authorizer.from_settings(operator_settings)
    except ConfigurationError as e:
        logging.error(f"Invalid operator configuration: {e}")
        raise e.as_kopf_error() from e

    setup_tracing(
        enabled=operator_settings.tracing_enabled,
        endpoint=operator_settings.tracing_endpoint,
        service_name=operator_settings.operator_name,
        sample_rate=operator_settings.tracing_sample_rate,
    )

    k8s_client = get_kubernetes_client()
    breaker = IdentityProviderCircuitBreaker(
        name="azure-identity",
        fail_max=operator_settings.circuit_breaker_fail_max,
        timeout_duration=operator_settings.circuit_breaker_reset_timeout,
    )
    provider = GraphIdentityProviderClient(
        authorizer,
        graph_endpoint=operator_settings.graph_endpoint,
        arm_endpoint=operator_settings.arm_endpoint,
        user_agent=operator_settings.user_agent,
        timeout=operator_settings.http_timeout_seconds,
        breaker=breaker,
    )
    store = KubernetesResourceStore(k8s_client)
    lifecycle = IdentityLifecycle(
        store,
        provider,
        subscription_id=operator_settings.azure_subscription_id,
        max_attempts=operator_settings.role_assignment_max_attempts,
        initial_delay=operator_settings.role_assignment_initial_delay_seconds,
        max_delay=operator_settings.role_assignment_max_delay_seconds,
    )

    memo.k8s_client = k8s_client
    memo.authorizer = authorizer
    memo.provider = provider
    memo.reconciler = IdentityReconciler(store, lifecycle)
    memo.pass_locks = {}

    # Start metrics server for Prometheus scraping and health checks
    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port, host=operator_settings.metrics_host
        )
        await metrics_server.start()
        memo.metrics_server = metrics_server
        logging.info(
            f"Metrics and health endpoints available on "
            f"{operator_settings.metrics_host}:{operator_settings.metrics_port}"
        )
    except OSError as e:
        logging.error(f"Failed to start metrics server: {e}")
        # Don't fail operator startup if metrics server fails
        logging.warning("Continuing without metrics server")
        memo.metrics_server = None


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, **_) -> None:
    """
    Operator cleanup handler.

    Closes the HTTP client and credential, stops the metrics server and
    flushes pending spans.
    """
    logging.info("Shutting down aadpi-terminator...")

    provider = getattr(memo, "provider", None)
    if provider is not None:
        await provider.close()

    authorizer = getattr(memo, "authorizer", None)
    if authorizer is not None:
        await authorizer.close()

    metrics_server = getattr(memo, "metrics_server", None)
    if metrics_server is not None:
        await metrics_server.stop()

    shutdown_tracing()


@kopf.on.probe(id="healthz")
async def health_check(memo: kopf.Memo, **_) -> dict[str, str]:
    """
    Liveness probe covering the Kubernetes API, the CRD and Azure AD tokens.

    Returns:
        Dictionary indicating operator health status
    """
    health_checker = HealthChecker(
        k8s_client=getattr(memo, "k8s_client", None),
        authorizer=getattr(memo, "authorizer", None),
    )
    results = await health_checker.check_all()
    return {
        "status": health_checker.get_overall_health(results),
        "operator": operator_settings.operator_name,
        "checks": ", ".join(f"{name}={r.status}" for name, r in results.items()),
    }


@kopf.on.probe(id="ready")
async def readiness_check(memo: kopf.Memo, **_) -> dict[str, str]:
    """
    Readiness probe - indicates if operator is ready to handle requests.

    Returns:
        Dictionary indicating operator readiness
    """
    health_checker = HealthChecker(
        k8s_client=getattr(memo, "k8s_client", None),
        authorizer=getattr(memo, "authorizer", None),
    )
    results = {
        "kubernetes_api": await health_checker.check_kubernetes_api(),
        "crds_installed": await health_checker.check_crds_installed(),
    }
    if getattr(memo, "authorizer", None) is not None:
        results["identity_provider_auth"] = (
            await health_checker.check_identity_provider_auth()
        )

    ready = all(result.status == "healthy" for result in results.values())
    return {
        "status": "ready" if ready else "not_ready",
        "operator": operator_settings.operator_name,
    }


def main() -> None:
    """
    Main entry point for the operator.

    Configures logging, determines the namespace scope and runs kopf.
    """
    configure_logging()

    watched_namespaces = operator_settings.watched_namespaces
    try:
        if watched_namespaces:
            kopf.run(
                namespaces=watched_namespaces,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
            )
        else:
            kopf.run(
                clusterwide=True,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
            )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)


if __name__ == "__main__":
    main()
