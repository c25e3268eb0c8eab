"""
Cluster resource store for IdentityRequests and their dependent objects.

The reconciler talks to the cluster only through the ResourceStore
protocol. KubernetesResourceStore implements it on top of the official
kubernetes client and maps API failures onto the operator error hierarchy:
404 becomes ``None``/``False``, 409 a conflict, 5xx and network failures a
transient error.
"""

import logging
from enum import Enum
from typing import Any, Protocol

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from aadpi_terminator.constants import (
    API_GROUP,
    API_VERSION,
    AZURE_IDENTITY_BINDING_KIND,
    AZURE_IDENTITY_BINDING_PLURAL,
    AZURE_IDENTITY_KIND,
    AZURE_IDENTITY_PLURAL,
    IDENTITY_REQUEST_KIND,
    IDENTITY_REQUEST_PLURAL,
    POD_IDENTITY_GROUP,
    POD_IDENTITY_VERSION,
)
from aadpi_terminator.errors import (
    AlreadyExistsError,
    ConflictError,
    KubernetesAPIError,
    TransientIOError,
)

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Object kinds the reconciler reads and writes."""

    IDENTITY_REQUEST = IDENTITY_REQUEST_KIND
    SECRET = "Secret"
    IDENTITY_DESCRIPTOR = AZURE_IDENTITY_KIND
    IDENTITY_BINDING = AZURE_IDENTITY_BINDING_KIND


# group, version, plural for the custom resource kinds
_CUSTOM_COORDINATES = {
    ResourceKind.IDENTITY_REQUEST: (API_GROUP, API_VERSION, IDENTITY_REQUEST_PLURAL),
    ResourceKind.IDENTITY_DESCRIPTOR: (
        POD_IDENTITY_GROUP,
        POD_IDENTITY_VERSION,
        AZURE_IDENTITY_PLURAL,
    ),
    ResourceKind.IDENTITY_BINDING: (
        POD_IDENTITY_GROUP,
        POD_IDENTITY_VERSION,
        AZURE_IDENTITY_BINDING_PLURAL,
    ),
}


class ResourceStore(Protocol):
    """CRUD over the four object kinds; all objects are plain dicts."""

    async def get(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> dict[str, Any] | None: ...

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> bool: ...


def _kind_of(obj: dict[str, Any]) -> ResourceKind:
    return ResourceKind(obj["kind"])


def _translate_api_exception(
    e: ApiException, action: str, kind: ResourceKind, namespace: str, name: str
) -> Exception:
    target = f"{kind.value} {namespace}/{name}"
    status = e.status or 0

    if status == 409:
        if action == "create":
            # create conflicts are always name collisions
            return AlreadyExistsError(f"{target} already exists")
        return ConflictError(f"Concurrent modification of {target} during {action}")
    if status == 429 or status >= 500 or status == 0:
        return TransientIOError(
            f"Kubernetes API unavailable during {action} of {target}: "
            f"HTTP {status} {e.reason}"
        )
    return KubernetesAPIError(
        f"Failed to {action} {target}: HTTP {status}",
        reason=e.reason,
        retryable=False,
    )


class KubernetesResourceStore:
    """ResourceStore backed by the Kubernetes API."""

    def __init__(self, k8s_client: client.ApiClient | None = None):
        if k8s_client is None:
            from .kubernetes import get_kubernetes_client

            k8s_client = get_kubernetes_client()
        self.k8s_client = k8s_client
        self._core = client.CoreV1Api(k8s_client)
        self._custom = client.CustomObjectsApi(k8s_client)

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.k8s_client.sanitize_for_serialization(obj)

    def _call(self, action: str, kind: ResourceKind, namespace: str, name: str, func, /, **kwargs):
        try:
            return func(**kwargs)
        except urllib3.exceptions.HTTPError as e:
            raise TransientIOError(
                f"Kubernetes API unreachable during {action} of "
                f"{kind.value} {namespace}/{name}: {e}"
            ) from e

    async def get(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> dict[str, Any] | None:
        """Return the object, or None when it does not exist."""
        try:
            if kind is ResourceKind.SECRET:
                result = self._call(
                    "get", kind, namespace, name,
                    self._core.read_namespaced_secret, name=name, namespace=namespace,
                )
            else:
                group, version, plural = _CUSTOM_COORDINATES[kind]
                result = self._call(
                    "get", kind, namespace, name,
                    self._custom.get_namespaced_custom_object,
                    group=group, version=version, namespace=namespace,
                    plural=plural, name=name,
                )
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate_api_exception(e, "get", kind, namespace, name) from e
        return self._to_dict(result)

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = _kind_of(obj)
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        try:
            if kind is ResourceKind.SECRET:
                result = self._call(
                    "create", kind, namespace, name,
                    self._core.create_namespaced_secret, namespace=namespace, body=obj,
                )
            else:
                group, version, plural = _CUSTOM_COORDINATES[kind]
                result = self._call(
                    "create", kind, namespace, name,
                    self._custom.create_namespaced_custom_object,
                    group=group, version=version, namespace=namespace,
                    plural=plural, body=obj,
                )
        except ApiException as e:
            raise _translate_api_exception(e, "create", kind, namespace, name) from e
        logger.info(f"Created {kind.value} {namespace}/{name}")
        return self._to_dict(result)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object; a stale resourceVersion raises ConflictError."""
        kind = _kind_of(obj)
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        try:
            if kind is ResourceKind.SECRET:
                result = self._call(
                    "update", kind, namespace, name,
                    self._core.replace_namespaced_secret,
                    name=name, namespace=namespace, body=obj,
                )
            else:
                group, version, plural = _CUSTOM_COORDINATES[kind]
                result = self._call(
                    "update", kind, namespace, name,
                    self._custom.replace_namespaced_custom_object,
                    group=group, version=version, namespace=namespace,
                    plural=plural, name=name, body=obj,
                )
        except ApiException as e:
            raise _translate_api_exception(e, "update", kind, namespace, name) from e
        return self._to_dict(result)

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Write the whole status block of a custom object in one request."""
        kind = _kind_of(obj)
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        group, version, plural = _CUSTOM_COORDINATES[kind]
        try:
            result = self._call(
                "update status of", kind, namespace, name,
                self._custom.patch_namespaced_custom_object_status,
                group=group, version=version, namespace=namespace,
                plural=plural, name=name, body={"status": obj.get("status") or {}},
            )
        except ApiException as e:
            raise _translate_api_exception(
                e, "update status of", kind, namespace, name
            ) from e
        return self._to_dict(result)

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> bool:
        """Delete the object; returns False when it was already absent."""
        try:
            if kind is ResourceKind.SECRET:
                self._call(
                    "delete", kind, namespace, name,
                    self._core.delete_namespaced_secret, name=name, namespace=namespace,
                )
            else:
                group, version, plural = _CUSTOM_COORDINATES[kind]
                self._call(
                    "delete", kind, namespace, name,
                    self._custom.delete_namespaced_custom_object,
                    group=group, version=version, namespace=namespace,
                    plural=plural, name=name,
                    body=client.V1DeleteOptions(propagation_policy="Background"),
                )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{kind.value} {namespace}/{name} already absent")
                return False
            raise _translate_api_exception(e, "delete", kind, namespace, name) from e
        logger.info(f"Deleted {kind.value} {namespace}/{name}")
        return True
