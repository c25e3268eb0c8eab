"""Tests for manifest builders and finalizer/journal bookkeeping."""

from aadpi_terminator.constants import (
    CLIENT_ID_ANNOTATION,
    IDENTITY_FINALIZER,
    JOURNAL_ANNOTATION,
    OPERATOR_LABEL_KEY,
)
from aadpi_terminator.models.identity import ProvisioningJournal
from aadpi_terminator.utils.kubernetes import (
    build_azure_identity_binding_manifest,
    build_azure_identity_manifest,
    build_secret_manifest,
    has_finalizer,
    is_owned_by,
    owner_reference,
    read_journal,
    with_finalizer,
    with_journal,
    without_finalizer,
)

from .fakes import make_request


class TestManifests:
    def test_secret_manifest(self):
        secret = build_secret_manifest(make_request(), "client-1", "s3cr3t")

        assert secret["kind"] == "Secret"
        assert secret["stringData"] == {"clientSecret": "s3cr3t"}
        assert secret["metadata"]["annotations"] == {CLIENT_ID_ANNOTATION: "client-1"}
        assert secret["metadata"]["labels"][OPERATOR_LABEL_KEY] == "aadpi-terminator"

    def test_azure_identity_manifest(self):
        identity = build_azure_identity_manifest(make_request(), "client-1", "tenant-1")

        assert identity["apiVersion"] == "aadpodidentity.k8s.io/v1"
        assert identity["kind"] == "AzureIdentity"
        assert identity["spec"]["clientPassword"] == {"name": "svc-a", "namespace": "default"}

    def test_binding_manifest(self):
        binding = build_azure_identity_binding_manifest(make_request(), "web")

        assert binding["kind"] == "AzureIdentityBinding"
        assert binding["spec"] == {"azureIdentity": "svc-a", "selector": "web"}

    def test_owner_reference(self):
        reference = owner_reference(make_request())

        assert reference["kind"] == "AzureIdentityTerminator"
        assert reference["apiVersion"] == "azidterminator.io/v1alpha1"
        assert reference["uid"] == "uid-svc-a"
        assert reference["controller"] is True


class TestOwnership:
    def test_dependent_is_owned(self):
        request = make_request()
        secret = build_secret_manifest(request, "client-1", "x")

        assert is_owned_by(secret, request)

    def test_other_owner(self):
        secret = build_secret_manifest(make_request(uid="other"), "client-1", "x")

        assert not is_owned_by(secret, make_request())

    def test_request_without_uid_owns_nothing(self):
        request = make_request(uid="")
        secret = build_secret_manifest(request, "client-1", "x")

        assert not is_owned_by(secret, request)


class TestFinalizers:
    def test_add_and_remove(self):
        request = make_request(finalizers=["other.io/keep"])

        added = with_finalizer(request)
        assert added["metadata"]["finalizers"] == ["other.io/keep", IDENTITY_FINALIZER]
        assert has_finalizer(added)
        assert not has_finalizer(request)

        removed = without_finalizer(added)
        assert removed["metadata"]["finalizers"] == ["other.io/keep"]

    def test_adding_twice_is_a_no_op(self):
        request = with_finalizer(with_finalizer(make_request()))

        assert request["metadata"]["finalizers"] == [IDENTITY_FINALIZER]


class TestJournal:
    def test_missing_journal_is_empty(self):
        assert read_journal(make_request()) == ProvisioningJournal()

    def test_write_and_read(self):
        journal = ProvisioningJournal(app_object_id="app-1", client_id="client-1")

        request = with_journal(make_request(), journal)

        assert JOURNAL_ANNOTATION in request["metadata"]["annotations"]
        assert read_journal(request) == journal
