"""Tests for KubernetesResourceStore error translation and routing."""

from unittest.mock import MagicMock

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from aadpi_terminator.errors import (
    AlreadyExistsError,
    ConflictError,
    KubernetesAPIError,
    TransientIOError,
)
from aadpi_terminator.utils.resource_store import KubernetesResourceStore, ResourceKind


@pytest.fixture
def resource_store():
    k8s_client = MagicMock()
    k8s_client.sanitize_for_serialization.side_effect = lambda obj: {"sanitized": obj}
    store = KubernetesResourceStore(k8s_client)
    store._core = MagicMock()
    store._custom = MagicMock()
    return store


def secret_body():
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "svc-a", "namespace": "default"},
    }


def binding_body():
    return {
        "apiVersion": "aadpodidentity.k8s.io/v1",
        "kind": "AzureIdentityBinding",
        "metadata": {"name": "svc-a", "namespace": "default"},
    }


class TestGet:
    @pytest.mark.asyncio
    async def test_missing_object_is_none(self, resource_store):
        resource_store._custom.get_namespaced_custom_object.side_effect = ApiException(
            status=404
        )

        result = await resource_store.get(ResourceKind.IDENTITY_DESCRIPTOR, "default", "svc-a")

        assert result is None

    @pytest.mark.asyncio
    async def test_custom_object_coordinates(self, resource_store):
        resource_store._custom.get_namespaced_custom_object.return_value = {"kind": "AzureIdentity"}

        result = await resource_store.get(ResourceKind.IDENTITY_DESCRIPTOR, "default", "svc-a")

        assert result == {"kind": "AzureIdentity"}
        resource_store._custom.get_namespaced_custom_object.assert_called_once_with(
            group="aadpodidentity.k8s.io",
            version="v1",
            namespace="default",
            plural="azureidentities",
            name="svc-a",
        )

    @pytest.mark.asyncio
    async def test_secret_is_read_through_core_api(self, resource_store):
        model = object()
        resource_store._core.read_namespaced_secret.return_value = model

        result = await resource_store.get(ResourceKind.SECRET, "default", "svc-a")

        assert result == {"sanitized": model}
        resource_store._core.read_namespaced_secret.assert_called_once_with(
            name="svc-a", namespace="default"
        )

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, resource_store):
        resource_store._custom.get_namespaced_custom_object.side_effect = ApiException(
            status=503, reason="Service Unavailable"
        )

        with pytest.raises(TransientIOError):
            await resource_store.get(ResourceKind.IDENTITY_REQUEST, "default", "svc-a")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, resource_store):
        resource_store._core.read_namespaced_secret.side_effect = (
            urllib3.exceptions.MaxRetryError(None, "/api", "connection refused")
        )

        with pytest.raises(TransientIOError):
            await resource_store.get(ResourceKind.SECRET, "default", "svc-a")

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retryable(self, resource_store):
        resource_store._core.read_namespaced_secret.side_effect = ApiException(
            status=403, reason="Forbidden"
        )

        with pytest.raises(KubernetesAPIError) as exc_info:
            await resource_store.get(ResourceKind.SECRET, "default", "svc-a")

        assert exc_info.value.retryable is False


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_conflict_is_already_exists(self, resource_store):
        resource_store._core.create_namespaced_secret.side_effect = ApiException(status=409)

        with pytest.raises(AlreadyExistsError):
            await resource_store.create(secret_body())

    @pytest.mark.asyncio
    async def test_update_conflict_is_conflict(self, resource_store):
        resource_store._custom.replace_namespaced_custom_object.side_effect = ApiException(
            status=409
        )

        with pytest.raises(ConflictError) as exc_info:
            await resource_store.update(binding_body())

        assert not isinstance(exc_info.value, AlreadyExistsError)

    @pytest.mark.asyncio
    async def test_update_status_sends_only_status(self, resource_store):
        request = {
            "apiVersion": "azidterminator.io/v1alpha1",
            "kind": "AzureIdentityTerminator",
            "metadata": {"name": "svc-a", "namespace": "default"},
            "spec": {"podSelector": "svc-a"},
            "status": {"clientID": "client-1"},
        }
        resource_store._custom.patch_namespaced_custom_object_status.return_value = request

        await resource_store.update_status(request)

        kwargs = resource_store._custom.patch_namespaced_custom_object_status.call_args.kwargs
        assert kwargs["plural"] == "azureidentityterminators"
        assert kwargs["body"] == {"status": {"clientID": "client-1"}}

    @pytest.mark.asyncio
    async def test_delete_missing_object_returns_false(self, resource_store):
        resource_store._custom.delete_namespaced_custom_object.side_effect = ApiException(
            status=404
        )

        assert await resource_store.delete(ResourceKind.IDENTITY_BINDING, "default", "svc-a") is False

    @pytest.mark.asyncio
    async def test_delete_existing_object_returns_true(self, resource_store):
        assert await resource_store.delete(ResourceKind.SECRET, "default", "svc-a") is True
        resource_store._core.delete_namespaced_secret.assert_called_once_with(
            name="svc-a", namespace="default"
        )
