"""
Pydantic models for AzureIdentityTerminator (IdentityRequest) resources.

This module defines the user-facing spec, the engine-owned status, the
provisioning journal kept as a write-ahead record on the resource, and the
in-memory ExternalIdentity that lives only for one reconciliation pass.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_RESOURCE_GROUP_ID = re.compile(
    r"^/subscriptions/[^/]+/resourceGroups/[^/]+$", re.IGNORECASE
)


def parse_duration(value: str) -> timedelta:
    """
    Parse a Go-style duration string such as "24h", "90m" or "1h30m".

    Raises:
        ValueError: If the string is malformed or not strictly positive
    """
    text = value.strip()
    if not text:
        raise ValueError("duration must not be empty")

    seconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(
            f"invalid duration {value!r}: expected a sequence like '1h', '90m' or '1h30m'"
        )
    total = timedelta(seconds=seconds)
    if total <= timedelta(0):
        raise ValueError(f"duration {value!r} must be positive")
    return total


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 UTC timestamp with second precision."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class IdentityRequestSpec(BaseModel):
    """Desired state of an AzureIdentityTerminator resource."""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    registration_name: str = Field(
        ...,
        min_length=1,
        max_length=120,
        validation_alias=AliasChoices(
            "registrationName", "displayName", "aadRegistrationName", "registration_name"
        ),
        description="Display name of the Azure AD application",
    )
    secret_duration: str = Field(
        ...,
        validation_alias=AliasChoices(
            "secretDuration", "clientSecretDuration", "secret_duration"
        ),
        description="Lifetime of the generated client secret (Go duration syntax)",
    )
    pod_selector: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("podSelector", "pod_selector"),
        description="aad-pod-identity selector label value",
    )
    node_resource_group: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "nodeResourceGroup", "nodeResourceGroupID", "node_resource_group"
        ),
        description="Resource group name or ID the Reader role is scoped to",
    )
    tags: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("tags", "spnTags"),
        description="Tags applied to the service principal",
    )

    @field_validator("registration_name", "pod_selector", "node_resource_group")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("secret_duration")
    @classmethod
    def validate_secret_duration(cls, v: str) -> str:
        parse_duration(v)
        return v.strip()

    @field_validator("node_resource_group")
    @classmethod
    def validate_node_resource_group(cls, v: str) -> str:
        if v.startswith("/") and not _RESOURCE_GROUP_ID.match(v):
            raise ValueError(
                "must be a resource group name or "
                "/subscriptions/<id>/resourceGroups/<name>"
            )
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in v:
            if tag not in seen:
                seen.append(tag)
        return seen

    @property
    def credential_lifetime(self) -> timedelta:
        return parse_duration(self.secret_duration)

    def role_assignment_scope(self, subscription_id: str) -> str:
        """Full ARM scope of the node resource group."""
        if self.node_resource_group.startswith("/"):
            return self.node_resource_group
        return (
            f"/subscriptions/{subscription_id}/resourceGroups/{self.node_resource_group}"
        )

    def immutable_view(self) -> dict[str, Any]:
        """Normalised form of every field frozen after provisioning."""
        return {
            "registrationName": self.registration_name,
            "secretDuration": self.credential_lifetime.total_seconds(),
            "podSelector": self.pod_selector,
            "nodeResourceGroup": self.node_resource_group,
            "tags": sorted(self.tags),
        }

    def spec_hash(self) -> str:
        encoded = json.dumps(self.immutable_view(), sort_keys=True).encode()
        return hashlib.sha256(encoded).hexdigest()


class IdentityStatus(BaseModel):
    """Identifiers recorded once provisioning has fully succeeded."""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    app_object_id: str | None = Field(None, alias="appObjectID")
    client_id: str | None = Field(None, alias="clientID")
    service_principal_object_id: str | None = Field(
        None, alias="servicePrincipalObjectID"
    )
    role_assignment_id: str | None = Field(None, alias="roleAssignmentID")
    secret_expiration: str | None = Field(None, alias="secretExpiration")
    binding_name: str | None = Field(None, alias="bindingName")
    spec_hash: str | None = Field(None, alias="specHash")

    @property
    def is_complete(self) -> bool:
        return all(
            [
                self.app_object_id,
                self.service_principal_object_id,
                self.role_assignment_id,
                self.secret_expiration,
                self.binding_name,
            ]
        )

    def to_status_fields(self) -> dict[str, Any]:
        """All identifier fields together, for a single status write."""
        return self.model_dump(by_alias=True)


class ProvisioningJournal(BaseModel):
    """
    Write-ahead record of external identifiers created so far.

    Stored as JSON in an annotation on the IdentityRequest and updated right
    after each external create, so a later pass can resume or compensate.
    Never holds the credential value.
    """

    model_config = {"populate_by_name": True, "extra": "ignore"}

    app_object_id: str | None = Field(None, alias="appObjectID")
    client_id: str | None = Field(None, alias="clientID")
    tenant_id: str | None = Field(None, alias="tenantID")
    service_principal_object_id: str | None = Field(
        None, alias="servicePrincipalObjectID"
    )
    role_assignment_id: str | None = Field(None, alias="roleAssignmentID")
    secret_expiration: str | None = Field(None, alias="secretExpiration")
    spec: dict[str, Any] | None = None

    @classmethod
    def from_annotation(cls, raw: str | None) -> "ProvisioningJournal":
        if not raw:
            return cls()
        try:
            return cls.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            # A mangled journal must not block teardown; fall back to status only
            logger.warning(f"Ignoring unreadable provisioning journal: {e}")
            return cls()

    def to_annotation(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), sort_keys=True)

    @property
    def has_external_resources(self) -> bool:
        return bool(self.app_object_id or self.role_assignment_id)

    @property
    def is_complete(self) -> bool:
        return all(
            [
                self.app_object_id,
                self.client_id,
                self.tenant_id,
                self.service_principal_object_id,
                self.role_assignment_id,
                self.secret_expiration,
            ]
        )

    def changed_fields(self, current: dict[str, Any]) -> list[str]:
        """Names of immutable fields that differ from the provisioned spec."""
        if not self.spec:
            return ["spec"]
        return sorted(k for k in current if self.spec.get(k) != current[k]) or ["spec"]


@dataclass
class ExternalIdentity:
    """Identity created in Azure AD during one pass; discarded afterwards."""

    client_id: str
    tenant_id: str
    app_object_id: str
    service_principal_object_id: str
    role_assignment_id: str
    secret_expiration: datetime
    secret_valid_from: datetime | None = None
    client_secret: str | None = field(default=None, repr=False)

    def to_status(self, binding_name: str, spec_hash: str) -> IdentityStatus:
        return IdentityStatus(
            app_object_id=self.app_object_id,
            client_id=self.client_id,
            service_principal_object_id=self.service_principal_object_id,
            role_assignment_id=self.role_assignment_id,
            secret_expiration=format_timestamp(self.secret_expiration),
            binding_name=binding_name,
            spec_hash=spec_hash,
        )


@dataclass
class ReconcileOutcome:
    """Result of one reconciliation pass, reported back to the handler."""

    requeue: bool
    action: str
    message: str = ""
    identifiers: dict[str, Any] = field(default_factory=dict)
