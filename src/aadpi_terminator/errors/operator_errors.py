"""
Operator error hierarchy with categorization and retry logic.

This module defines the error types used throughout the aadpi-terminator
operator, providing clear categorization and integration with kopf's retry
mechanisms. Every reconciliation step raises one of these and the base
reconciler converts it to a kopf error exactly once.
"""

import kopf


class OperatorError(Exception):
    """
    Base error class for all operator-related exceptions.

    Provides categorization, retry behavior, and user guidance for resolution.
    """

    def __init__(
        self,
        message: str,
        category: str,
        retryable: bool = True,
        delay: int = 30,
        user_action: str | None = None,
        cause: Exception | None = None,
    ):
        """
        Initialize operator error.

        Args:
            message: Human-readable error description
            category: Error category (validation, transient, conflict, external, ...)
            retryable: Whether kopf should retry this operation
            delay: Suggested retry delay in seconds
            user_action: What user should do to resolve the issue
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.delay = delay
        self.user_action = user_action
        self.cause = cause

    def as_kopf_error(self):
        """Convert to appropriate kopf exception type."""
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        else:
            return kopf.PermanentError(str(self))

    def __str__(self) -> str:
        """Enhanced string representation with user guidance."""
        base_msg = super().__str__()
        if self.user_action:
            return f"{base_msg}\nAction required: {self.user_action}"
        return base_msg


class ValidationError(OperatorError):
    """Error in resource specification validation."""

    def __init__(
        self, message: str, field: str | None = None, user_action: str | None = None
    ):
        action = user_action or "Check resource specification and fix validation errors"
        if field:
            message = f"Validation error in field '{field}': {message}"
        super().__init__(
            message=message, category="validation", retryable=False, user_action=action
        )


class PermanentValidationError(ValidationError):
    """Malformed request that no amount of retrying will fix."""


class ImmutableFieldError(PermanentValidationError):
    """Spec edited after the identity was provisioned."""

    def __init__(self, fields: list[str]):
        super().__init__(
            message=(
                "Spec fields cannot change after provisioning: " + ", ".join(fields)
            ),
            user_action=(
                "Revert the change, or delete and re-create the resource "
                "to provision a new identity"
            ),
        )
        self.fields = fields


class TemporaryError(OperatorError):
    """Temporary error that should be retried."""

    def __init__(self, message: str, delay: int = 30, user_action: str | None = None):
        super().__init__(
            message=message,
            category="temporary",
            retryable=True,
            delay=delay,
            user_action=user_action
            or "Wait for automatic retry or check system status",
        )


class TransientIOError(TemporaryError):
    """Network or API failure; the pass is rescheduled with backoff."""

    def __init__(self, message: str, delay: int = 30):
        super().__init__(message=message, delay=delay)
        self.category = "transient"


class ConflictError(TemporaryError):
    """Concurrent update to the same object; re-read and retry."""

    def __init__(self, message: str, delay: int = 5):
        super().__init__(
            message=message,
            delay=delay,
            user_action="No action needed, the pass is retried with fresh state",
        )
        self.category = "conflict"


class AlreadyExistsError(ConflictError):
    """Create rejected because an object with the same name exists."""


class ExternalServiceError(OperatorError):
    """Error communicating with external services."""

    def __init__(
        self,
        service: str,
        message: str,
        retryable: bool = True,
        delay: int = 60,
        user_action: str | None = None,
    ):
        action = user_action or f"Check {service} connectivity and credentials"
        super().__init__(
            message=f"{service} error: {message}",
            category="external",
            retryable=retryable,
            delay=delay,
            user_action=action,
        )


class IdentityProviderError(ExternalServiceError):
    """Error communicating with Microsoft Graph or Azure Resource Manager."""

    # Returned while a new principal has not replicated to ARM yet
    RETRYABLE_ERROR_CODES = frozenset({"PrincipalNotFound"})

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        retryable: bool = True,
    ):
        if status_code:
            message = f"HTTP {status_code}: {message}"

        # 4xx errors are generally not retryable (client errors), except throttling
        if (
            status_code
            and 400 <= status_code < 500
            and status_code != 429
            and error_code not in self.RETRYABLE_ERROR_CODES
        ):
            retryable = False

        super().__init__(
            service="Azure identity provider",
            message=message,
            retryable=retryable,
            user_action="Check the operator's Azure AD permissions and tenant configuration",
        )
        self.status_code = status_code
        self.error_code = error_code


class KubernetesAPIError(ExternalServiceError):
    """Error communicating with Kubernetes API."""

    def __init__(self, message: str, reason: str | None = None, retryable: bool = True):
        if reason:
            message = f"{message} (reason: {reason})"

        # Some K8s errors are not retryable
        non_retryable_reasons = {"Forbidden", "Unauthorized", "Invalid"}
        if reason in non_retryable_reasons:
            retryable = False

        super().__init__(
            service="Kubernetes API",
            message=message,
            retryable=retryable,
            user_action="Check RBAC permissions and cluster connectivity",
        )


class ConfigurationError(OperatorError):
    """Error in operator or resource configuration."""

    def __init__(
        self, message: str, retryable: bool = False, user_action: str | None = None
    ):
        super().__init__(
            message=message,
            category="configuration",
            retryable=retryable,
            user_action=user_action or "Review and correct configuration",
        )


class AuthorizationError(OperatorError):
    """Error acquiring an access token for the identity provider."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        user_action: str | None = None,
    ):
        action = user_action or "Check AZURE_TENANT_ID, AZURE_CLIENT_ID and AZURE_CLIENT_SECRET"

        super().__init__(
            message=message,
            category="authorization",
            retryable=retryable,
            user_action=action,
        )
