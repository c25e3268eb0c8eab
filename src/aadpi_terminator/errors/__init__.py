"""
Error handling module for the aadpi-terminator operator.

This module provides a comprehensive error hierarchy that integrates with kopf
and provides clear categorization for different types of failures.
"""

from .operator_errors import (
    AlreadyExistsError,
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    IdentityProviderError,
    ImmutableFieldError,
    KubernetesAPIError,
    OperatorError,
    PermanentValidationError,
    TemporaryError,
    TransientIOError,
    ValidationError,
)

__all__ = [
    "OperatorError",
    "ValidationError",
    "PermanentValidationError",
    "ImmutableFieldError",
    "TemporaryError",
    "TransientIOError",
    "ConflictError",
    "AlreadyExistsError",
    "ExternalServiceError",
    "IdentityProviderError",
    "KubernetesAPIError",
    "ConfigurationError",
    "AuthorizationError",
]
