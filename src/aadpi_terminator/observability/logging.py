"""
Structured logging for the aadpi-terminator operator.

Every record can carry a short correlation ID shared by all log lines of one
reconciliation pass, and identity provider side effects are written as audit
records holding the identifiers they produced. Credential values are never
passed to any of these helpers.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Shared by every task spawned within one reconciliation pass
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Extra record attributes copied into the JSON document
STRUCTURED_FIELDS = (
    "resource_type",
    "resource_name",
    "namespace",
    "operation",
    "duration",
    "error_type",
    "audit",
    "step",
    "app_object_id",
    "client_id",
    "service_principal_object_id",
    "role_assignment_id",
    "attempt",
    "http_status",
    "response_body",
)

# Libraries whose INFO output drowns the operator's own records
QUIET_LOGGERS = (
    "kopf",
    "kubernetes",
    "httpx",
    "azure",
    "aiohttp.access",
    "aiohttp.server",
    "aiohttp.web",
)


class CorrelationIDFilter(logging.Filter):
    """Stamp ``correlation_id`` on each record, starting one if none is set."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = correlation_id.get()
        if not current:
            current = set_correlation_id(generate_correlation_id())
        record.correlation_id = current
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON document per record, including the structured extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields arrive as attributes on the record, not as an 'extra' dict
        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(corr_id: str) -> str:
    correlation_id.set(corr_id)
    return corr_id


def setup_structured_logging(
    log_level: str = "INFO",
    enable_json_formatting: bool = True,
    correlation_id_enabled: bool = True,
) -> None:
    """
    Replace the root handlers with one stderr handler.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR)
        enable_json_formatting: Emit JSON documents instead of text lines
        correlation_id_enabled: Stamp correlation IDs on every record
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if enable_json_formatting:
        formatter: logging.Formatter = StructuredFormatter()
    elif correlation_id_enabled:
        formatter = logging.Formatter(
            "%(asctime)s - %(correlation_id)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler.setFormatter(formatter)

    if correlation_id_enabled:
        handler.addFilter(CorrelationIDFilter())

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)



class OperatorLogger:
    """
    Logger for reconciliation passes and identity provider audit records.

    Keyword arguments to ``debug``/``info``/``warning``/``error`` become
    structured fields on the record.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_reconciliation_start(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        correlation_id: str | None = None,
    ) -> str:
        """
        Log the start of a reconciliation pass.

        Returns:
            The correlation ID used for this pass
        """
        if correlation_id is None:
            correlation_id = generate_correlation_id()

        set_correlation_id(correlation_id)

        self.logger.info(
            f"Starting reconciliation for {resource_type} {namespace}/{resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_start",
            },
        )

        return correlation_id

    def log_reconciliation_success(
        self, resource_type: str, resource_name: str, namespace: str, duration: float
    ) -> None:
        self.logger.info(
            f"Reconciliation completed for {resource_type} {namespace}/{resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_success",
                "duration": duration,
            },
        )

    def log_reconciliation_error(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        error: Exception,
        duration: float,
    ) -> None:
        self.logger.error(
            f"Reconciliation failed for {resource_type} {namespace}/{resource_name}: {error}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_error",
                "error_type": type(error).__name__,
                "duration": duration,
            },
            exc_info=True,
        )

    def log_identity_operation(
        self,
        operation: str,
        resource_name: str,
        namespace: str,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Audit an identity provider side effect.

        Args:
            operation: Provider operation (create_application, delete_application, ...)
            resource_name: Name of the owning IdentityRequest
            namespace: Namespace of the owning IdentityRequest
            success: Whether the operation succeeded
            details: Non-sensitive identifiers produced or consumed by the operation
        """
        level = logging.INFO if success else logging.WARNING
        message = (
            f"Identity provider {operation} {'succeeded' if success else 'failed'} "
            f"for {namespace}/{resource_name}"
        )

        audit_data: dict[str, Any] = {
            "audit_event": "identity_provider",
            "operation": operation,
            "resource_name": resource_name,
            "namespace": namespace,
            "success": success,
            "timestamp": datetime.now(UTC).isoformat(),
        }

        if details:
            audit_data.update(details)

        self.logger.log(level, message, extra={"audit": audit_data})

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with extra data."""
        self.logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message with extra data."""
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with extra data."""
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs) -> None:
        """Log error message with extra data."""
        self.logger.error(message, exc_info=exc_info, extra=kwargs)
