"""
Base reconciler class providing common patterns for resource reconciliation.

This module defines the BaseReconciler class that implements standard
patterns for status conditions, metrics, structured logging and the single
translation of operator errors into kopf errors.
"""

import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Protocol

from ..constants import (
    CONDITION_AVAILABLE,
    CONDITION_DEGRADED,
    CONDITION_FALSE,
    CONDITION_PROGRESSING,
    CONDITION_READY,
    CONDITION_RECONCILING,
    CONDITION_TRUE,
    PHASE_DEGRADED,
    PHASE_FAILED,
    PHASE_READY,
    PHASE_RECONCILING,
)
from ..errors import ImmutableFieldError, OperatorError, TemporaryError
from ..models.identity import ReconcileOutcome
from ..observability.logging import OperatorLogger


class StatusProtocol(Protocol):
    """Protocol for kopf Status objects that allow dynamic attribute assignment."""

    def __setattr__(self, name: str, value: Any) -> None: ...
    def __getattr__(self, name: str) -> Any: ...


class BaseReconciler(ABC):
    """
    Base class for resource reconcilers.

    Provides common patterns for:
    - Status management with conditions
    - Error translation into kopf errors
    - Metrics and correlation-aware logging around each pass
    """

    resource_type = "resource"

    def __init__(self):
        self.logger = OperatorLogger(self.__class__.__name__)

    async def reconcile(
        self,
        name: str,
        namespace: str,
        status: StatusProtocol | None = None,
        generation: int = 0,
        operation: str = "reconcile",
    ) -> ReconcileOutcome:
        """
        Run one pass with metrics tracking and status bookkeeping.

        Args:
            name: Resource name
            namespace: Resource namespace
            status: kopf status object to record phase and conditions on, if any
            generation: metadata.generation of the triggering event
            operation: Label for the duration metric (reconcile, delete, resync)

        Returns:
            The outcome of the pass

        Raises:
            kopf.TemporaryError: For retryable failures
            kopf.PermanentError: For failures that retrying will not fix
        """
        from ..observability.metrics import metrics_collector

        start_time = time.time()
        self.logger.log_reconciliation_start(
            resource_type=self.resource_type, resource_name=name, namespace=namespace
        )

        async with metrics_collector.track_reconciliation(
            resource_type=self.resource_type,
            namespace=namespace,
            name=name,
            operation=operation,
        ):
            try:
                if status is not None:
                    self.update_status_reconciling(
                        status, "Starting reconciliation", generation
                    )

                outcome = await self.do_reconcile(name, namespace)

                if status is not None and outcome.action not in ("absent", "deleted"):
                    self.update_status_ready(status, outcome.message, generation)
                    metrics_collector.update_resource_status(
                        resource_type=self.resource_type,
                        namespace=namespace,
                        phase=PHASE_READY,
                    )

                self.logger.log_reconciliation_success(
                    resource_type=self.resource_type,
                    resource_name=name,
                    namespace=namespace,
                    duration=time.time() - start_time,
                )
                return outcome

            except OperatorError as e:
                self._record_failure(e, name, namespace, status, generation, start_time)
                raise e.as_kopf_error() from e

            except Exception as e:
                # Wrap unexpected errors as temporary to allow retry
                error = TemporaryError(
                    f"Unexpected error during reconciliation: {str(e)}"
                )
                self._record_failure(
                    error, name, namespace, status, generation, start_time
                )
                raise error.as_kopf_error() from e

    def _record_failure(
        self,
        error: OperatorError,
        name: str,
        namespace: str,
        status: StatusProtocol | None,
        generation: int,
        start_time: float,
    ) -> None:
        from ..observability.metrics import metrics_collector

        self.logger.log_reconciliation_error(
            resource_type=self.resource_type,
            resource_name=name,
            namespace=namespace,
            error=error,
            duration=time.time() - start_time,
        )
        phase = PHASE_FAILED
        if status is not None:
            if isinstance(error, ImmutableFieldError):
                # The provisioned identity keeps working; only the spec drifted
                self.update_status_degraded(status, str(error), generation)
                phase = PHASE_DEGRADED
            else:
                self.update_status_failed(status, str(error), generation)
        metrics_collector.update_resource_status(
            resource_type=self.resource_type, namespace=namespace, phase=phase
        )

    @abstractmethod
    async def do_reconcile(self, name: str, namespace: str) -> ReconcileOutcome:
        """Perform one pass of resource-specific reconciliation logic."""
        raise NotImplementedError("Subclasses must implement do_reconcile method")

    def update_status_reconciling(
        self, status: StatusProtocol, message: str, generation: int = 0
    ) -> None:
        """Update status to indicate reconciliation is in progress."""
        status.phase = PHASE_RECONCILING
        status.message = message
        timestamp = datetime.now(UTC).isoformat()
        status.lastReconcileTime = timestamp
        status.lastUpdated = timestamp
        status.observedGeneration = generation
        self._add_condition(
            status,
            CONDITION_RECONCILING,
            CONDITION_TRUE,
            "ReconciliationInProgress",
            message,
            generation,
        )
        self._add_condition(
            status,
            CONDITION_PROGRESSING,
            CONDITION_TRUE,
            "ReconciliationInProgress",
            f"Resource is progressing: {message}",
            generation,
        )
        self._remove_condition(status, CONDITION_READY)
        self._remove_condition(status, CONDITION_AVAILABLE)
        self._remove_condition(status, CONDITION_DEGRADED)

    def update_status_ready(
        self,
        status: StatusProtocol,
        message: str = "Resource is ready",
        generation: int = 0,
    ) -> None:
        """Update status to indicate resource is ready."""
        status.phase = PHASE_READY
        status.message = message
        timestamp = datetime.now(UTC).isoformat()
        status.lastReconcileTime = timestamp
        status.lastUpdated = timestamp
        status.observedGeneration = generation
        self._add_condition(
            status,
            CONDITION_READY,
            CONDITION_TRUE,
            "ReconciliationSucceeded",
            message,
            generation,
        )
        self._remove_condition(status, CONDITION_RECONCILING)
        self._add_condition(
            status,
            CONDITION_AVAILABLE,
            CONDITION_TRUE,
            "ReconciliationSucceeded",
            f"Resource is available: {message}",
            generation,
        )
        self._remove_condition(status, CONDITION_PROGRESSING)
        self._remove_condition(status, CONDITION_DEGRADED)

    def update_status_failed(
        self, status: StatusProtocol, message: str, generation: int = 0
    ) -> None:
        """Update status to indicate reconciliation failed."""
        status.phase = PHASE_FAILED
        status.message = message
        timestamp = datetime.now(UTC).isoformat()
        status.lastReconcileTime = timestamp
        status.lastUpdated = timestamp
        status.observedGeneration = generation
        self._add_condition(
            status,
            CONDITION_READY,
            CONDITION_FALSE,
            "ReconciliationFailed",
            message,
            generation,
        )
        self._remove_condition(status, CONDITION_RECONCILING)
        self._add_condition(
            status,
            CONDITION_AVAILABLE,
            CONDITION_FALSE,
            "ReconciliationFailed",
            f"Resource unavailable: {message}",
            generation,
        )
        self._add_condition(
            status,
            CONDITION_DEGRADED,
            CONDITION_TRUE,
            "ReconciliationFailed",
            f"Resource degraded: {message}",
            generation,
        )
        self._remove_condition(status, CONDITION_PROGRESSING)

    def update_status_degraded(
        self, status: StatusProtocol, message: str, generation: int = 0
    ) -> None:
        """Identity still works but the object no longer matches it."""
        status.phase = PHASE_DEGRADED
        status.message = message
        timestamp = datetime.now(UTC).isoformat()
        status.lastReconcileTime = timestamp
        status.lastUpdated = timestamp
        status.observedGeneration = generation
        self._add_condition(
            status,
            CONDITION_READY,
            CONDITION_FALSE,
            "PartialFunctionality",
            message,
            generation,
        )
        self._add_condition(
            status,
            CONDITION_AVAILABLE,
            CONDITION_TRUE,
            "PartialFunctionality",
            f"Resource partially available: {message}",
            generation,
        )
        self._add_condition(
            status,
            CONDITION_DEGRADED,
            CONDITION_TRUE,
            "PartialFunctionality",
            f"Resource degraded: {message}",
            generation,
        )
        self._remove_condition(status, CONDITION_RECONCILING)
        self._remove_condition(status, CONDITION_PROGRESSING)

    def _add_condition(
        self,
        status: StatusProtocol,
        condition_type: str,
        condition_status: str,
        reason: str,
        message: str,
        generation: int = 0,
    ) -> None:
        """Add or update a status condition with observedGeneration tracking."""
        existing = getattr(status, "conditions", None)
        conditions = existing if isinstance(existing, list) else []

        filtered: list[dict[str, Any]] = [
            c
            for c in conditions
            if isinstance(c, dict) and c.get("type") != condition_type
        ]
        filtered.append(
            {
                "type": condition_type,
                "status": condition_status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": datetime.now(UTC).isoformat(),
                "observedGeneration": generation,
            }
        )
        status.conditions = filtered

    def _remove_condition(self, status: StatusProtocol, condition_type: str) -> None:
        """Remove a status condition."""
        existing = getattr(status, "conditions", None)
        if not existing:
            return
        status.conditions = [
            c for c in existing if isinstance(c, dict) and c.get("type") != condition_type
        ]
