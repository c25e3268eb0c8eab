"""
Observability utilities for the aadpi-terminator operator.

This module provides metrics, health checks, tracing and structured logging
capabilities for production monitoring and troubleshooting.
"""

from .health import HealthChecker
from .logging import OperatorLogger, setup_structured_logging
from .metrics import MetricsServer, get_metrics_registry

__all__ = [
    "MetricsServer",
    "get_metrics_registry",
    "HealthChecker",
    "OperatorLogger",
    "setup_structured_logging",
]
