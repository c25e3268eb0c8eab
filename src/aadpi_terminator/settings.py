"""Centralized operator settings using pydantic-settings.

This module provides a single source of truth for all operator configuration
loaded from environment variables. Uses pydantic for automatic validation,
type coercion, and documentation.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from aadpi_terminator.constants import (
    DEFAULT_ROLE_ASSIGNMENT_INITIAL_DELAY,
    DEFAULT_ROLE_ASSIGNMENT_MAX_ATTEMPTS,
    DEFAULT_ROLE_ASSIGNMENT_MAX_DELAY,
)


class Settings(BaseSettings):
    """Operator configuration loaded from environment variables.

    All settings have sensible defaults for production use. Override via
    environment variables as documented per field.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator identification
    operator_name: str = Field(
        default="aadpi-terminator",
        description="Name of the operator deployment",
        validation_alias="OPERATOR_NAME",
    )

    # Azure AD identity used by the operator itself
    azure_tenant_id: str = Field(
        default="",
        description="Azure AD tenant the applications are registered in",
        validation_alias="AZURE_TENANT_ID",
    )
    azure_subscription_id: str = Field(
        default="",
        description="Subscription holding the node resource groups",
        validation_alias="AZURE_SUBSCRIPTION_ID",
    )
    azure_client_id: str = Field(
        default="",
        description="Client ID of the operator's own service principal",
        validation_alias="AZURE_CLIENT_ID",
    )
    azure_client_secret: str = Field(
        default="",
        description="Client secret of the operator's own service principal",
        validation_alias="AZURE_CLIENT_SECRET",
        repr=False,
    )
    azure_auth_mode: Literal["client_secret", "device_code", "default"] = Field(
        default="client_secret",
        description="Credential flow used to authorize against Azure",
        validation_alias="AZURE_AUTH_MODE",
    )
    azure_authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Azure AD authority host",
        validation_alias="AZURE_AUTHORITY_HOST",
    )
    graph_endpoint: str = Field(
        default="https://graph.microsoft.com",
        description="Microsoft Graph endpoint",
        validation_alias="GRAPH_ENDPOINT",
    )
    arm_endpoint: str = Field(
        default="https://management.azure.com",
        description="Azure Resource Manager endpoint",
        validation_alias="ARM_ENDPOINT",
    )
    user_agent: str = Field(
        default="aadpi-terminator",
        description="User agent sent with identity provider requests",
        validation_alias="AZURE_USER_AGENT",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="AZURE_HTTP_TIMEOUT_SECONDS",
        description="Timeout for identity provider HTTP requests",
    )
    token_refresh_margin_seconds: int = Field(
        default=300,
        validation_alias="TOKEN_REFRESH_MARGIN_SECONDS",
        description="Refresh cached access tokens this long before they expire",
    )

    # Role assignment retry policy
    role_assignment_max_attempts: int = Field(
        default=DEFAULT_ROLE_ASSIGNMENT_MAX_ATTEMPTS,
        ge=1,
        validation_alias="ROLE_ASSIGNMENT_MAX_ATTEMPTS",
        description="Attempts made to create a role assignment before giving up",
    )
    role_assignment_initial_delay_seconds: float = Field(
        default=DEFAULT_ROLE_ASSIGNMENT_INITIAL_DELAY,
        validation_alias="ROLE_ASSIGNMENT_INITIAL_DELAY_SECONDS",
        description="Delay before the first role assignment retry",
    )
    role_assignment_max_delay_seconds: float = Field(
        default=DEFAULT_ROLE_ASSIGNMENT_MAX_DELAY,
        validation_alias="ROLE_ASSIGNMENT_MAX_DELAY_SECONDS",
        description="Upper bound for the delay between role assignment retries",
    )

    # Circuit breaker for identity provider calls
    circuit_breaker_fail_max: int = Field(
        default=5,
        validation_alias="CIRCUIT_BREAKER_FAIL_MAX",
        description="Consecutive failures before the identity provider circuit opens",
    )
    circuit_breaker_reset_timeout: int = Field(
        default=60,
        validation_alias="CIRCUIT_BREAKER_RESET_TIMEOUT",
        description="Seconds before an open circuit allows a trial request",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        validation_alias="JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="CORRELATION_IDS",
        description="Enable correlation IDs in logs for request tracing",
    )

    # Namespace watching
    namespaces: str = Field(
        default="",
        validation_alias="AADPI_TERMINATOR_NAMESPACES",
        description="Comma-separated list of namespaces to watch (empty = all namespaces)",
    )

    # Reconciliation behavior
    resync_interval_seconds: float = Field(
        default=300.0,
        validation_alias="RESYNC_INTERVAL_SECONDS",
        description="Interval between periodic convergence checks per resource",
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=8081,
        validation_alias="METRICS_PORT",
        description="Port for Prometheus metrics endpoint",
    )
    metrics_host: str = Field(
        default="0.0.0.0",
        validation_alias="METRICS_HOST",
        description="Host address to bind metrics server",
    )
    tracing_enabled: bool = Field(
        default=False,
        validation_alias="TRACING_ENABLED",
        description="Export OpenTelemetry traces",
    )
    tracing_endpoint: str = Field(
        default="http://localhost:4317",
        validation_alias="TRACING_ENDPOINT",
        description="OTLP collector endpoint (gRPC)",
    )
    tracing_sample_rate: float = Field(
        default=1.0,
        validation_alias="TRACING_SAMPLE_RATE",
        description="Fraction of root spans sampled (0.0-1.0)",
    )

    @property
    def watched_namespaces(self) -> list[str] | None:
        """Parse watched namespaces from comma-separated string.

        Returns:
            List of namespace names, or None to watch all namespaces
        """
        if self.namespaces:
            return [ns.strip() for ns in self.namespaces.split(",") if ns.strip()]
        return None


# Global settings instance - initialized once at module import
settings = Settings()
