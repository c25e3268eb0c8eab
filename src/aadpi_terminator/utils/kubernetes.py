"""
Kubernetes utilities for the aadpi-terminator operator.

This module provides helper functions for interacting with the Kubernetes API
and for synthesizing the objects derived from an IdentityRequest.

Key functionality:
- Kubernetes client management and configuration
- Secret, AzureIdentity and AzureIdentityBinding manifests
- Owner references and ownership checks for dependent objects
- Finalizer and provisioning journal bookkeeping on the IdentityRequest
"""

import copy
import logging
from typing import Any

from kubernetes import client, config

from aadpi_terminator.constants import (
    API_GROUP,
    API_VERSION,
    AZURE_IDENTITY_BINDING_KIND,
    AZURE_IDENTITY_KIND,
    AZURE_IDENTITY_TYPE_SERVICE_PRINCIPAL,
    CLIENT_ID_ANNOTATION,
    CLIENT_SECRET_KEY,
    IDENTITY_FINALIZER,
    IDENTITY_REQUEST_KIND,
    JOURNAL_ANNOTATION,
    OPERATOR_LABEL_KEY,
    OPERATOR_LABEL_VALUE,
    POD_IDENTITY_GROUP,
    POD_IDENTITY_VERSION,
)
from aadpi_terminator.models.identity import ProvisioningJournal

logger = logging.getLogger(__name__)


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    Tries in-cluster configuration first and falls back to the local
    kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    return client.ApiClient()


def owner_reference(request: dict[str, Any]) -> dict[str, Any]:
    """Controller owner reference pointing at the IdentityRequest."""
    metadata = request["metadata"]
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": IDENTITY_REQUEST_KIND,
        "name": metadata["name"],
        "uid": metadata.get("uid", ""),
        "controller": True,
        # Teardown deletes dependents explicitly before the finalizer is released
        "blockOwnerDeletion": False,
    }


def is_owned_by(obj: dict[str, Any], request: dict[str, Any]) -> bool:
    """Whether a dependent object carries an owner reference to this request."""
    uid = request["metadata"].get("uid")
    references = (obj.get("metadata") or {}).get("ownerReferences") or []
    return bool(uid) and any(ref.get("uid") == uid for ref in references)


def _dependent_metadata(
    request: dict[str, Any], annotations: dict[str, str] | None = None
) -> dict[str, Any]:
    metadata = request["metadata"]
    result: dict[str, Any] = {
        "name": metadata["name"],
        "namespace": metadata["namespace"],
        "labels": {OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE},
        "ownerReferences": [owner_reference(request)],
    }
    if annotations:
        result["annotations"] = annotations
    return result


def build_secret_manifest(
    request: dict[str, Any], client_id: str, client_secret: str
) -> dict[str, Any]:
    """
    Secret holding the generated credential under ``clientSecret``.

    The client ID annotation lets a later pass tell whether the stored
    credential belongs to the application recorded in the journal.
    """
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _dependent_metadata(request, {CLIENT_ID_ANNOTATION: client_id}),
        "type": "Opaque",
        "stringData": {CLIENT_SECRET_KEY: client_secret},
    }


def build_azure_identity_manifest(
    request: dict[str, Any], client_id: str, tenant_id: str
) -> dict[str, Any]:
    metadata = request["metadata"]
    return {
        "apiVersion": f"{POD_IDENTITY_GROUP}/{POD_IDENTITY_VERSION}",
        "kind": AZURE_IDENTITY_KIND,
        "metadata": _dependent_metadata(request),
        "spec": {
            "type": AZURE_IDENTITY_TYPE_SERVICE_PRINCIPAL,
            "tenantID": tenant_id,
            "clientID": client_id,
            "clientPassword": {
                "name": metadata["name"],
                "namespace": metadata["namespace"],
            },
        },
    }


def build_azure_identity_binding_manifest(
    request: dict[str, Any], pod_selector: str
) -> dict[str, Any]:
    return {
        "apiVersion": f"{POD_IDENTITY_GROUP}/{POD_IDENTITY_VERSION}",
        "kind": AZURE_IDENTITY_BINDING_KIND,
        "metadata": _dependent_metadata(request),
        "spec": {
            "azureIdentity": request["metadata"]["name"],
            "selector": pod_selector,
        },
    }


def has_finalizer(request: dict[str, Any]) -> bool:
    return IDENTITY_FINALIZER in (request["metadata"].get("finalizers") or [])


def with_finalizer(request: dict[str, Any]) -> dict[str, Any]:
    """Copy of the request with the finalizer appended."""
    updated = copy.deepcopy(request)
    finalizers = list(updated["metadata"].get("finalizers") or [])
    if IDENTITY_FINALIZER not in finalizers:
        finalizers.append(IDENTITY_FINALIZER)
    updated["metadata"]["finalizers"] = finalizers
    return updated


def without_finalizer(request: dict[str, Any]) -> dict[str, Any]:
    """Copy of the request with the finalizer removed."""
    updated = copy.deepcopy(request)
    updated["metadata"]["finalizers"] = [
        f for f in (updated["metadata"].get("finalizers") or []) if f != IDENTITY_FINALIZER
    ]
    return updated


def read_journal(request: dict[str, Any]) -> ProvisioningJournal:
    annotations = request["metadata"].get("annotations") or {}
    return ProvisioningJournal.from_annotation(annotations.get(JOURNAL_ANNOTATION))


def with_journal(
    request: dict[str, Any], journal: ProvisioningJournal
) -> dict[str, Any]:
    """Copy of the request carrying the given journal annotation."""
    updated = copy.deepcopy(request)
    annotations = dict(updated["metadata"].get("annotations") or {})
    annotations[JOURNAL_ANNOTATION] = journal.to_annotation()
    updated["metadata"]["annotations"] = annotations
    return updated
