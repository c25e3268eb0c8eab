"""
AzureIdentityTerminator handlers - Drive the Azure AD identity lifecycle.

Every handler resolves to one reconciliation pass for the object's key:

- create/resume/update: provision, or confirm the identity is in sync
- delete: tear the identity down, then release the finalizer
- timer: periodic resync that repairs dependents deleted out of band

The operator manages its own finalizer, so the delete handler is optional
and kopf adds no finalizer of its own. Passes for the same key never
overlap, including timer passes.
"""

import asyncio
import logging
from typing import Any

import kopf

from aadpi_terminator.constants import (
    API_GROUP,
    API_VERSION,
    IDENTITY_REQUEST_PLURAL,
    PHASE_READY,
)
from aadpi_terminator.models.identity import ReconcileOutcome
from aadpi_terminator.observability.tracing import traced_handler
from aadpi_terminator.services.identity_reconciler import IdentityReconciler
from aadpi_terminator.settings import settings as operator_settings

logger = logging.getLogger(__name__)


class StatusWrapper:
    """Wrapper to make kopf patch.status compatible with StatusProtocol.

    All updates are written directly to the underlying patch object.
    """

    def __init__(self, patch_status: Any):
        object.__setattr__(self, "_patch_status", patch_status)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            object.__setattr__(self, name, value)
            return
        self._patch_status[name] = value

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        try:
            return self._patch_status[name]
        except (KeyError, TypeError):
            return None


def _pass_lock(memo: kopf.Memo, namespace: str, name: str) -> asyncio.Lock:
    locks: dict[tuple[str, str], asyncio.Lock] = memo.pass_locks
    return locks.setdefault((namespace, name), asyncio.Lock())


async def run_pass(
    reconciler: IdentityReconciler,
    lock: asyncio.Lock,
    name: str,
    namespace: str,
    status: StatusWrapper | None,
    generation: int,
    operation: str,
) -> ReconcileOutcome:
    """
    Run one pass, and a verification pass when the first one asked for it.

    The verification pass must find nothing left to do; if it still wants
    to requeue, kopf retries the handler shortly.
    """
    async with lock:
        outcome = await reconciler.reconcile(
            name, namespace, status, generation, operation
        )
        if not outcome.requeue:
            return outcome

        verification = await reconciler.reconcile(
            name, namespace, status, generation, "verify"
        )
        if verification.requeue:
            raise kopf.TemporaryError(
                f"{namespace}/{name} has not converged yet", delay=5
            )
        return outcome


@kopf.on.create(
    IDENTITY_REQUEST_PLURAL, group=API_GROUP, version=API_VERSION, backoff=1.5
)
@kopf.on.resume(
    IDENTITY_REQUEST_PLURAL, group=API_GROUP, version=API_VERSION, backoff=1.5
)
@traced_handler("ensure_identity")
async def ensure_identity(
    body: kopf.Body,
    name: str,
    namespace: str,
    meta: kopf.Meta,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Ensure the Azure AD identity for an AzureIdentityTerminator exists.

    Returns:
        None to avoid Kopf creating status subpaths
    """
    logger.info(f"Ensuring Azure AD identity for {namespace}/{name}")

    outcome = await run_pass(
        memo.reconciler,
        _pass_lock(memo, namespace, name),
        name,
        namespace,
        StatusWrapper(patch.status),
        meta.get("generation", 0),
        "reconcile",
    )
    if outcome.action in ("provisioned", "resumed"):
        kopf.info(body, reason="Provisioned", message=outcome.message)
    return None


@kopf.on.update(
    IDENTITY_REQUEST_PLURAL,
    group=API_GROUP,
    version=API_VERSION,
    field="spec",
    backoff=1.5,
)
@traced_handler("update_identity")
async def update_identity(
    diff: kopf.Diff,
    name: str,
    namespace: str,
    meta: kopf.Meta,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Handle spec edits.

    Provisioned identities are immutable, so an edit either reverts to the
    provisioned spec (Ready again) or fails the pass permanently.
    """
    changed = sorted({".".join(str(part) for part in entry[1]) for entry in diff})
    logger.info(
        f"Spec of {namespace}/{name} changed: {', '.join(changed) or 'no fields'}"
    )

    await run_pass(
        memo.reconciler,
        _pass_lock(memo, namespace, name),
        name,
        namespace,
        StatusWrapper(patch.status),
        meta.get("generation", 0),
        "update",
    )
    return None


@kopf.on.delete(
    IDENTITY_REQUEST_PLURAL,
    group=API_GROUP,
    version=API_VERSION,
    optional=True,
    backoff=1.5,
)
@traced_handler("delete_identity")
async def delete_identity(
    body: kopf.Body,
    name: str,
    namespace: str,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Tear down the identity and release the finalizer.

    Failures leave the finalizer in place and kopf retries with backoff.
    """
    logger.info(f"Starting deletion of {namespace}/{name}")

    outcome = await run_pass(
        memo.reconciler,
        _pass_lock(memo, namespace, name),
        name,
        namespace,
        None,
        0,
        "delete",
    )
    if outcome.action == "deleted":
        logger.info(f"Successfully deleted identity for {namespace}/{name}")
    memo.pass_locks.pop((namespace, name), None)


@kopf.timer(
    IDENTITY_REQUEST_PLURAL,
    group=API_GROUP,
    version=API_VERSION,
    interval=operator_settings.resync_interval_seconds,
    initial_delay=operator_settings.resync_interval_seconds,
)
@traced_handler("resync_identity")
async def resync_identity(
    body: kopf.Body,
    name: str,
    namespace: str,
    meta: kopf.Meta,
    status: kopf.Status,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Periodic resync of Ready identities.

    Recreates an AzureIdentity that was deleted out of band, along with a
    missing binding. A converged pass reads only the request and its
    AzureIdentity, so a binding deleted on its own is not noticed here.
    Objects that are being deleted or have not reached Ready are left to
    their event handlers.
    """
    if meta.get("deletionTimestamp") or status.get("phase") != PHASE_READY:
        return

    logger.debug(f"Resyncing identity for {namespace}/{name}")
    outcome = await run_pass(
        memo.reconciler,
        _pass_lock(memo, namespace, name),
        name,
        namespace,
        StatusWrapper(patch.status),
        meta.get("generation", 0),
        "resync",
    )
    if outcome.action in ("provisioned", "resumed"):
        kopf.warn(
            body,
            reason="Repaired",
            message=f"Dependent objects were recreated: {outcome.message}",
        )
