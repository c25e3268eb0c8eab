"""Unit tests for the AzureIdentityTerminator kopf handlers."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import kopf
import pytest

from aadpi_terminator.constants import PHASE_READY
from aadpi_terminator.handlers.identity import (
    StatusWrapper,
    delete_identity,
    ensure_identity,
    resync_identity,
    run_pass,
)
from aadpi_terminator.models.identity import ReconcileOutcome
from aadpi_terminator.utils.resource_store import ResourceKind

NS = "default"
NAME = "svc-a"


def outcome(action: str, requeue: bool) -> ReconcileOutcome:
    return ReconcileOutcome(requeue=requeue, action=action, message=action)


@pytest.fixture
def memo(reconciler):
    return kopf.Memo(reconciler=reconciler, pass_locks={})


def handler_kwargs(memo, request, status=None):
    return {
        "body": request,
        "name": NAME,
        "namespace": NS,
        "meta": request["metadata"],
        "status": status or {},
        "patch": SimpleNamespace(status={}),
        "memo": memo,
    }


class TestRunPass:
    @pytest.mark.asyncio
    async def test_converged_pass_runs_once(self):
        reconciler = SimpleNamespace(reconcile=AsyncMock(return_value=outcome("converged", False)))

        result = await run_pass(reconciler, asyncio.Lock(), NAME, NS, None, 1, "reconcile")

        assert result.action == "converged"
        assert reconciler.reconcile.await_count == 1

    @pytest.mark.asyncio
    async def test_changing_pass_is_verified(self):
        reconciler = SimpleNamespace(
            reconcile=AsyncMock(
                side_effect=[outcome("provisioned", True), outcome("converged", False)]
            )
        )

        result = await run_pass(reconciler, asyncio.Lock(), NAME, NS, None, 1, "reconcile")

        assert result.action == "provisioned"
        assert reconciler.reconcile.await_args_list[1].args[-1] == "verify"

    @pytest.mark.asyncio
    async def test_unverified_pass_is_retried_by_kopf(self):
        reconciler = SimpleNamespace(
            reconcile=AsyncMock(
                side_effect=[outcome("provisioned", True), outcome("resumed", True)]
            )
        )

        with pytest.raises(kopf.TemporaryError):
            await run_pass(reconciler, asyncio.Lock(), NAME, NS, None, 1, "reconcile")

    @pytest.mark.asyncio
    async def test_passes_for_one_key_do_not_overlap(self):
        active = []
        overlaps = []

        async def reconcile(*args):
            if active:
                overlaps.append(args)
            active.append(args)
            await asyncio.sleep(0.01)
            active.pop()
            return outcome("converged", False)

        reconciler = SimpleNamespace(reconcile=reconcile)
        lock = asyncio.Lock()

        await asyncio.gather(
            run_pass(reconciler, lock, NAME, NS, None, 1, "reconcile"),
            run_pass(reconciler, lock, NAME, NS, None, 1, "resync"),
        )

        assert overlaps == []


class TestStatusWrapper:
    def test_attributes_are_written_to_patch(self):
        patch_status = {}
        wrapper = StatusWrapper(patch_status)

        wrapper.phase = PHASE_READY
        wrapper.conditions = [{"type": "Ready"}]

        assert patch_status == {"phase": PHASE_READY, "conditions": [{"type": "Ready"}]}
        assert wrapper.phase == PHASE_READY

    def test_missing_attribute_is_none(self):
        assert StatusWrapper({}).message is None


class TestHandlers:
    @pytest.mark.asyncio
    async def test_ensure_provisions_and_emits_event(self, memo, store, request_obj):
        kwargs = handler_kwargs(memo, request_obj)

        with patch("aadpi_terminator.handlers.identity.kopf.info") as mock_info:
            await ensure_identity(**kwargs)

        assert store.peek(ResourceKind.IDENTITY_DESCRIPTOR, NS, NAME) is not None
        assert kwargs["patch"].status["phase"] == PHASE_READY
        mock_info.assert_called_once()
        assert mock_info.call_args.kwargs["reason"] == "Provisioned"

    @pytest.mark.asyncio
    async def test_resync_skips_resources_that_are_not_ready(self, memo, calls, request_obj):
        await resync_identity(**handler_kwargs(memo, request_obj, status={"phase": "Failed"}))

        assert calls == []

    @pytest.mark.asyncio
    async def test_resync_repairs_deleted_dependents(self, memo, store, provider, request_obj):
        with patch("aadpi_terminator.handlers.identity.kopf.info"):
            await ensure_identity(**handler_kwargs(memo, request_obj))
        store.objects.pop((ResourceKind.IDENTITY_BINDING, NS, NAME))
        store.objects.pop((ResourceKind.IDENTITY_DESCRIPTOR, NS, NAME))
        provider.calls.clear()

        with patch("aadpi_terminator.handlers.identity.kopf.warn") as mock_warn:
            await resync_identity(
                **handler_kwargs(memo, request_obj, status={"phase": PHASE_READY})
            )

        assert store.peek(ResourceKind.IDENTITY_BINDING, NS, NAME) is not None
        assert provider.provider_calls() == []
        assert mock_warn.call_args.kwargs["reason"] == "Repaired"

    @pytest.mark.asyncio
    async def test_delete_releases_lock(self, memo, store, request_obj):
        with patch("aadpi_terminator.handlers.identity.kopf.info"):
            await ensure_identity(**handler_kwargs(memo, request_obj))
        store.mark_deleted(NS, NAME)

        await delete_identity(**handler_kwargs(memo, request_obj))

        assert store.peek(ResourceKind.IDENTITY_REQUEST, NS, NAME) is None
        assert (NS, NAME) not in memo.pass_locks
