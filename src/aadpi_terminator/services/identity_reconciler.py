"""
Reconciliation engine for AzureIdentityTerminator (IdentityRequest) resources.

Each pass re-reads the request and derives its state from what it observes:

- being deleted: tear down, then release the finalizer
- no finalizer: attach it before any external call
- AzureIdentity present and status complete: nothing to do
- AzureIdentity present, status incomplete: finish from the journal
- AzureIdentity absent: provision

A pass performs only the missing actions, so running it again after success
issues reads and nothing else.
"""

from pydantic import ValidationError as PydanticValidationError

from ..constants import (
    SUCCESS_CONVERGED,
    SUCCESS_DELETION,
    SUCCESS_PROVISIONING,
)
from ..errors import ImmutableFieldError, PermanentValidationError
from ..models.identity import IdentityRequestSpec, IdentityStatus, ReconcileOutcome
from ..utils.kubernetes import has_finalizer, read_journal, with_finalizer, without_finalizer
from ..utils.resource_store import ResourceKind, ResourceStore
from .base_reconciler import BaseReconciler
from .identity_lifecycle import IdentityLifecycle


class IdentityReconciler(BaseReconciler):
    """Drives one IdentityRequest towards its provisioned or absent state."""

    resource_type = "identity"

    def __init__(self, store: ResourceStore, lifecycle: IdentityLifecycle):
        super().__init__()
        self.store = store
        self.lifecycle = lifecycle

    async def do_reconcile(self, name: str, namespace: str) -> ReconcileOutcome:
        return await self.reconcile_pass(namespace, name)

    async def reconcile_pass(self, namespace: str, name: str) -> ReconcileOutcome:
        """
        Run one reconciliation pass for the request at namespace/name.

        Returns:
            ReconcileOutcome; ``requeue`` is True when the pass changed
            something and a verification pass should follow

        Raises:
            OperatorError: Any failure; remaining steps are skipped
        """
        request = await self.store.get(ResourceKind.IDENTITY_REQUEST, namespace, name)
        if request is None:
            self.logger.debug(f"IdentityRequest {namespace}/{name} no longer exists")
            return ReconcileOutcome(requeue=False, action="absent")

        if request["metadata"].get("deletionTimestamp"):
            if not has_finalizer(request):
                return ReconcileOutcome(requeue=False, action="absent")
            await self.lifecycle.teardown(request)
            await self.store.update(without_finalizer(request))
            self.logger.info(f"Released finalizer on {namespace}/{name}")
            return ReconcileOutcome(
                requeue=False, action="deleted", message=SUCCESS_DELETION
            )

        if not has_finalizer(request):
            request = await self.store.update(with_finalizer(request))
            self.logger.debug(f"Attached finalizer to {namespace}/{name}")

        spec = self._validate_spec(request)
        status = IdentityStatus.model_validate(request.get("status") or {})

        if status.spec_hash and status.spec_hash != spec.spec_hash():
            changed = read_journal(request).changed_fields(spec.immutable_view())
            raise ImmutableFieldError(changed)

        descriptor = await self.store.get(
            ResourceKind.IDENTITY_DESCRIPTOR, namespace, name
        )
        if descriptor is not None:
            if status.is_complete:
                return ReconcileOutcome(
                    requeue=False,
                    action="converged",
                    message=SUCCESS_CONVERGED,
                    identifiers=status.to_status_fields(),
                )
            status = await self.lifecycle.resume(request, spec)
            return ReconcileOutcome(
                requeue=True,
                action="resumed",
                message=SUCCESS_PROVISIONING,
                identifiers=status.to_status_fields(),
            )

        status = await self.lifecycle.provision(request, spec)
        return ReconcileOutcome(
            requeue=True,
            action="provisioned",
            message=SUCCESS_PROVISIONING,
            identifiers=status.to_status_fields(),
        )

    def _validate_spec(self, request: dict) -> IdentityRequestSpec:
        try:
            return IdentityRequestSpec.model_validate(request.get("spec") or {})
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'spec'}: {err['msg']}"
                for err in e.errors()
            )
            raise PermanentValidationError(f"Invalid spec: {problems}") from e
