"""
Service layer for the aadpi-terminator operator.

This module provides the reconciler and lifecycle services that hold the
business logic, separated from the kopf handler layer.
"""

from .base_reconciler import BaseReconciler
from .identity_lifecycle import IdentityLifecycle
from .identity_reconciler import IdentityReconciler

__all__ = [
    "BaseReconciler",
    "IdentityLifecycle",
    "IdentityReconciler",
]
