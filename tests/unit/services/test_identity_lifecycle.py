"""
Unit tests for IdentityLifecycle.

Covers the role assignment retry loop, credential handling and the
identifier sources used by teardown.
"""

import string
from unittest.mock import patch

import pytest

from aadpi_terminator.constants import CLIENT_SECRET_KEY, JOURNAL_ANNOTATION
from aadpi_terminator.errors import (
    IdentityProviderError,
    TransientIOError,
)
from aadpi_terminator.models.identity import IdentityRequestSpec, ProvisioningJournal
from aadpi_terminator.services.identity_lifecycle import (
    IdentityLifecycle,
    generate_credential,
)
from aadpi_terminator.utils.resource_store import ResourceKind

from ..fakes import FIXED_NOW, SUBSCRIPTION_ID, TEST_CREDENTIAL, make_request

NS = "default"
NAME = "svc-a"


def principal_not_found():
    return IdentityProviderError(
        "Principal sp-2 does not exist in the directory",
        status_code=400,
        error_code="PrincipalNotFound",
    )


@pytest.fixture
def spec(request_obj):
    return IdentityRequestSpec.model_validate(request_obj["spec"])


class TestGenerateCredential:
    def test_credential_is_url_safe_and_long_enough(self):
        credential = generate_credential()

        assert len(credential) == 43
        assert set(credential) <= set(string.ascii_letters + string.digits + "-_")

    def test_credentials_differ(self):
        assert generate_credential() != generate_credential()


class TestRoleAssignmentRetry:
    """Bounded exponential backoff around role assignment creation."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self, lifecycle, provider, sleeps, request_obj, spec):
        provider.role_assignment_failures = [principal_not_found(), principal_not_found()]

        with patch(
            "aadpi_terminator.services.identity_lifecycle.metrics_collector"
        ) as mock_metrics:
            status = await lifecycle.provision(request_obj, spec)

        assert status.role_assignment_id
        assert sleeps == [2.0, 4.0]
        assert mock_metrics.record_role_assignment_retry.call_count == 2
        mock_metrics.record_role_assignment_retry.assert_called_with(NS)

    @pytest.mark.asyncio
    async def test_exhaustion_raises_transient_error(
        self, lifecycle, provider, store, sleeps, request_obj, spec
    ):
        provider.role_assignment_failures = [principal_not_found() for _ in range(3)]

        with pytest.raises(TransientIOError) as exc_info:
            await lifecycle.provision(request_obj, spec)

        assert "after 3 attempts" in str(exc_info.value)
        assert sleeps == [2.0, 4.0]
        assert len([c for c in provider.calls if c[0] == "create_role_assignment"]) == 3
        assert store.peek(ResourceKind.SECRET, NS, NAME) is None

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, store, provider, request_obj, spec):
        sleeps = []

        async def record_sleep(delay):
            sleeps.append(delay)

        lifecycle = IdentityLifecycle(
            store,
            provider,
            subscription_id=SUBSCRIPTION_ID,
            max_attempts=5,
            initial_delay=2.0,
            max_delay=5.0,
            clock=lambda: FIXED_NOW,
            sleep=record_sleep,
        )
        provider.role_assignment_failures = [principal_not_found() for _ in range(4)]

        await lifecycle.provision(request_obj, spec)

        assert sleeps == [2.0, 4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_throttling_is_retried(self, lifecycle, provider, sleeps, request_obj, spec):
        provider.role_assignment_failures = [
            IdentityProviderError("Too many requests", status_code=429)
        ]

        await lifecycle.provision(request_obj, spec)

        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, lifecycle, provider, sleeps, request_obj, spec):
        provider.role_assignment_failures = [
            IdentityProviderError("Forbidden", status_code=403, error_code="AuthorizationFailed")
        ]

        with pytest.raises(IdentityProviderError) as exc_info:
            await lifecycle.provision(request_obj, spec)

        assert exc_info.value.retryable is False
        assert sleeps == []


class TestCredentialHandling:
    @pytest.mark.asyncio
    async def test_provider_issued_credential_is_stored(
        self, lifecycle, provider, store, request_obj, spec
    ):
        provider.issued_secret = "issued-by-graph"

        await lifecycle.provision(request_obj, spec)

        secret = store.peek(ResourceKind.SECRET, NS, NAME)
        assert secret["stringData"] == {CLIENT_SECRET_KEY: "issued-by-graph"}

    @pytest.mark.asyncio
    async def test_journal_records_identifiers_without_credential(
        self, lifecycle, store, request_obj, spec
    ):
        await lifecycle.provision(request_obj, spec)

        request = store.peek(ResourceKind.IDENTITY_REQUEST, NS, NAME)
        raw = request["metadata"]["annotations"][JOURNAL_ANNOTATION]
        journal = ProvisioningJournal.from_annotation(raw)

        assert journal.is_complete
        assert journal.spec == spec.immutable_view()
        assert journal.secret_expiration == "2026-03-02T12:00:00Z"
        assert TEST_CREDENTIAL not in raw

    @pytest.mark.asyncio
    async def test_journal_write_retries_after_conflict(
        self, lifecycle, store, request_obj, spec
    ):
        # Someone else updated the request after it was read
        await store.update(request_obj)

        await lifecycle.provision(request_obj, spec)

        request = store.peek(ResourceKind.IDENTITY_REQUEST, NS, NAME)
        journal = ProvisioningJournal.from_annotation(
            request["metadata"]["annotations"][JOURNAL_ANNOTATION]
        )
        assert journal.is_complete


class TestTeardown:
    @pytest.mark.asyncio
    async def test_journal_identifiers_are_used_without_status(
        self, lifecycle, provider, store
    ):
        provider.applications["app-object-9"] = "client-9"
        journal = ProvisioningJournal(app_object_id="app-object-9", client_id="client-9")
        request = store.seed(make_request(journal=journal.to_annotation()))

        await lifecycle.teardown(request)

        assert provider.provider_calls() == [("delete_application", "app-object-9")]
        assert provider.applications == {}

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, lifecycle, provider, store, request_obj):
        await lifecycle.teardown(request_obj)

        assert provider.provider_calls() == []
        assert store.writes() == []

    @pytest.mark.asyncio
    async def test_foreign_dependents_survive(self, lifecycle, store, request_obj):
        store.seed(
            {
                "apiVersion": "aadpodidentity.k8s.io/v1",
                "kind": "AzureIdentity",
                "metadata": {
                    "name": NAME,
                    "namespace": NS,
                    "ownerReferences": [{"uid": "someone-else"}],
                },
            }
        )

        await lifecycle.teardown(request_obj)

        assert store.peek(ResourceKind.IDENTITY_DESCRIPTOR, NS, NAME) is not None
        assert store.writes() == []

    @pytest.mark.asyncio
    async def test_already_deleted_external_objects_count_as_removed(
        self, lifecycle, provider, request_obj
    ):
        request = dict(request_obj)
        request["status"] = {
            "appObjectID": "app-object-gone",
            "roleAssignmentID": "/subscriptions/x/resourceGroups/rg/providers/ra-gone",
        }

        await lifecycle.teardown(request)

        assert [c[0] for c in provider.provider_calls()] == [
            "delete_role_assignment",
            "delete_application",
        ]

    @pytest.mark.asyncio
    async def test_status_and_journal_identifiers_are_both_deleted(
        self, lifecycle, provider, store
    ):
        provider.applications["app-object-7"] = "client-7"
        journal = ProvisioningJournal(app_object_id="app-object-7", client_id="client-7")
        request = store.seed(make_request(journal=journal.to_annotation()))
        request["status"] = {"appObjectID": "app-object-3", "clientID": "client-3"}

        await lifecycle.teardown(request)

        assert provider.provider_calls() == [
            ("delete_application", "app-object-7"),
            ("delete_application", "app-object-3"),
        ]
        assert provider.applications == {}
