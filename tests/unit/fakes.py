"""In-memory stand-ins for the cluster and the identity provider.

Both fakes append to one shared call log so tests can assert the relative
order of cluster writes and provider calls.
"""

import copy
import itertools
from datetime import UTC, datetime
from typing import Any

from aadpi_terminator.constants import (
    API_GROUP,
    API_VERSION,
    IDENTITY_FINALIZER,
    IDENTITY_REQUEST_KIND,
    JOURNAL_ANNOTATION,
)
from aadpi_terminator.errors import AlreadyExistsError, ConflictError
from aadpi_terminator.utils.identity_provider import (
    Application,
    RoleAssignment,
    ServicePrincipal,
)
from aadpi_terminator.utils.resource_store import ResourceKind

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
TEST_CREDENTIAL = "generated-credential-value"
SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"

PROVIDER_OPERATIONS = {
    "create_application",
    "create_service_principal",
    "create_role_assignment",
    "delete_application",
    "delete_role_assignment",
}


def make_request(
    name: str = "svc-a",
    namespace: str = "default",
    spec: dict[str, Any] | None = None,
    uid: str = "uid-svc-a",
    finalizers: list[str] | None = None,
    journal: str | None = None,
) -> dict[str, Any]:
    """Build an AzureIdentityTerminator object as the API would return it."""
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "uid": uid,
        "generation": 1,
    }
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    if journal is not None:
        metadata["annotations"] = {JOURNAL_ANNOTATION: journal}
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": IDENTITY_REQUEST_KIND,
        "metadata": metadata,
        "spec": spec
        or {
            "registrationName": f"{namespace}-{name}",
            "secretDuration": "24h",
            "podSelector": name,
            "nodeResourceGroup": "rg-nodes",
            "tags": ["team-a"],
        },
    }


class FakeResourceStore:
    """ResourceStore keeping objects in a dict keyed by (kind, namespace, name)."""

    def __init__(self, calls: list[tuple[str, ...]]):
        self.calls = calls
        self.objects: dict[tuple[ResourceKind, str, str], dict[str, Any]] = {}
        self.updates: list[dict[str, Any]] = []
        self.failures: dict[tuple[str, ResourceKind], Exception] = {}
        self._versions = itertools.count(1)

    def seed(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Put an object in place without logging a call."""
        stored = copy.deepcopy(obj)
        stored["metadata"].setdefault("resourceVersion", str(next(self._versions)))
        key = (ResourceKind(obj["kind"]), obj["metadata"]["namespace"], obj["metadata"]["name"])
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def peek(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def mark_deleted(self, namespace: str, name: str) -> None:
        """Emulate a delete request on an object held by finalizers."""
        key = (ResourceKind.IDENTITY_REQUEST, namespace, name)
        self.objects[key]["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"

    def _fail(self, operation: str, kind: ResourceKind) -> None:
        error = self.failures.get((operation, kind))
        if error is not None:
            raise error

    def writes(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] in ("create", "update", "update_status", "delete")]

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        self.calls.append(("get", kind.value, name))
        self._fail("get", kind)
        return self.peek(kind, namespace, name)

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = ResourceKind(obj["kind"])
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        self.calls.append(("create", kind.value, name))
        self._fail("create", kind)
        if (kind, namespace, name) in self.objects:
            raise AlreadyExistsError(f"{kind.value} {namespace}/{name} already exists")
        stored = copy.deepcopy(obj)
        stored["metadata"].setdefault("uid", f"uid-{kind.value.lower()}-{name}")
        return self.seed(stored)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = ResourceKind(obj["kind"])
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        self.calls.append(("update", kind.value, name))
        self._fail("update", kind)
        current = self.objects.get((kind, namespace, name))
        if current is None:
            raise ConflictError(f"{kind.value} {namespace}/{name} is gone")
        sent_version = obj["metadata"].get("resourceVersion")
        if sent_version and sent_version != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"Stale resourceVersion for {namespace}/{name}")

        stored = copy.deepcopy(obj)
        # Replacing a custom object never changes its status
        if "status" in current:
            stored["status"] = copy.deepcopy(current["status"])
        else:
            stored.pop("status", None)
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        self.updates.append(copy.deepcopy(stored))

        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"].get(
            "finalizers"
        ):
            del self.objects[(kind, namespace, name)]
        else:
            self.objects[(kind, namespace, name)] = stored
        return copy.deepcopy(stored)

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = ResourceKind(obj["kind"])
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        self.calls.append(("update_status", kind.value, name))
        self._fail("update_status", kind)
        current = self.objects[(kind, namespace, name)]
        current["status"] = {**(current.get("status") or {}), **obj.get("status", {})}
        return copy.deepcopy(current)

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> bool:
        self.calls.append(("delete", kind.value, name))
        self._fail("delete", kind)
        return self.objects.pop((kind, namespace, name), None) is not None


class FakeIdentityProvider:
    """IdentityProviderClient that hands out sequential identifiers."""

    def __init__(self, calls: list[tuple[str, ...]], tenant_id: str = "tenant-1"):
        self.calls = calls
        self.tenant_id = tenant_id
        self.applications: dict[str, str] = {}
        self.principals: dict[str, dict[str, Any]] = {}
        self.role_assignments: dict[str, dict[str, str]] = {}
        self.role_assignment_failures: list[Exception] = []
        self.failures: dict[str, Exception] = {}
        self.issued_secret: str | None = None
        self._ids = itertools.count(1)

    def provider_calls(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] in PROVIDER_OPERATIONS]

    def _fail(self, operation: str) -> None:
        error = self.failures.get(operation)
        if error is not None:
            raise error

    async def create_application(self, display_name: str) -> Application:
        self.calls.append(("create_application", display_name))
        self._fail("create_application")
        n = next(self._ids)
        app = Application(
            app_object_id=f"app-object-{n}", client_id=f"client-{n}", tenant_id=self.tenant_id
        )
        self.applications[app.app_object_id] = app.client_id
        return app

    async def create_service_principal(
        self,
        client_id: str,
        credential_value: str,
        valid_from: datetime,
        valid_to: datetime,
        tags: list[str],
    ) -> ServicePrincipal:
        self.calls.append(("create_service_principal", client_id))
        self._fail("create_service_principal")
        object_id = f"sp-{next(self._ids)}"
        self.principals[object_id] = {
            "client_id": client_id,
            "valid_from": valid_from,
            "valid_to": valid_to,
            "tags": list(tags),
        }
        return ServicePrincipal(
            object_id=object_id, credential_value=self.issued_secret or credential_value
        )

    async def create_role_assignment(
        self, scope: str, principal_id: str, role_id: str
    ) -> RoleAssignment:
        self.calls.append(("create_role_assignment", scope, principal_id))
        if self.role_assignment_failures:
            raise self.role_assignment_failures.pop(0)
        assignment_id = (
            f"{scope}/providers/Microsoft.Authorization/roleAssignments/ra-{next(self._ids)}"
        )
        self.role_assignments[assignment_id] = {
            "scope": scope,
            "principal_id": principal_id,
            "role_id": role_id,
        }
        return RoleAssignment(assignment_id=assignment_id)

    async def delete_application(self, app_object_id: str) -> bool:
        self.calls.append(("delete_application", app_object_id))
        self._fail("delete_application")
        return self.applications.pop(app_object_id, None) is not None

    async def delete_role_assignment(self, assignment_id: str) -> bool:
        self.calls.append(("delete_role_assignment", assignment_id))
        self._fail("delete_role_assignment")
        return self.role_assignments.pop(assignment_id, None) is not None


def has_finalizer(obj: dict[str, Any] | None) -> bool:
    return obj is not None and IDENTITY_FINALIZER in (obj["metadata"].get("finalizers") or [])
