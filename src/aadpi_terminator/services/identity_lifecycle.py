"""
Provisioning and teardown of the Azure AD identity behind an IdentityRequest.

IdentityLifecycle performs the ordered side effects of a pass:

- provision: application, service principal with credential, Reader role
  assignment, then the Secret, AzureIdentity and AzureIdentityBinding, and
  finally one atomic status write
- resume: finish a pass that stopped after the AzureIdentity was written
- teardown: remove dependents, then the role assignment, then the application

Every external identifier is recorded in the provisioning journal right after
the provider returns it, so an interrupted pass can either continue from the
journal or delete what it left behind before starting over.
"""

import asyncio
import secrets
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from ..constants import (
    CLIENT_ID_ANNOTATION,
    CREDENTIAL_ENTROPY_BYTES,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_ROLE_ASSIGNMENT_INITIAL_DELAY,
    DEFAULT_ROLE_ASSIGNMENT_MAX_ATTEMPTS,
    DEFAULT_ROLE_ASSIGNMENT_MAX_DELAY,
    READER_ROLE_DEFINITION_ID,
)
from ..errors import (
    AlreadyExistsError,
    ConflictError,
    ImmutableFieldError,
    OperatorError,
    PermanentValidationError,
    TransientIOError,
)
from ..models.identity import (
    ExternalIdentity,
    IdentityRequestSpec,
    IdentityStatus,
    ProvisioningJournal,
    format_timestamp,
)
from ..observability.logging import OperatorLogger
from ..observability.metrics import metrics_collector
from ..utils.identity_provider import IdentityProviderClient, RoleAssignment
from ..utils.kubernetes import (
    build_azure_identity_binding_manifest,
    build_azure_identity_manifest,
    build_secret_manifest,
    is_owned_by,
    read_journal,
    with_journal,
)
from ..utils.resource_store import ResourceKind, ResourceStore

# Dependents in teardown order
DEPENDENT_KINDS = (
    ResourceKind.IDENTITY_DESCRIPTOR,
    ResourceKind.IDENTITY_BINDING,
    ResourceKind.SECRET,
)


def generate_credential() -> str:
    """Random URL-safe client secret."""
    return secrets.token_urlsafe(CREDENTIAL_ENTROPY_BYTES)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _distinct(*identifiers: str | None) -> list[str]:
    """Non-empty identifiers in order, without repeats."""
    return list(dict.fromkeys(i for i in identifiers if i))


class IdentityLifecycle:
    """Ordered side effects that create or remove one external identity."""

    def __init__(
        self,
        store: ResourceStore,
        provider: IdentityProviderClient,
        subscription_id: str,
        role_id: str = READER_ROLE_DEFINITION_ID,
        max_attempts: int = DEFAULT_ROLE_ASSIGNMENT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_ROLE_ASSIGNMENT_INITIAL_DELAY,
        max_delay: float = DEFAULT_ROLE_ASSIGNMENT_MAX_DELAY,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        credential_factory: Callable[[], str] = generate_credential,
    ):
        self.store = store
        self.provider = provider
        self.subscription_id = subscription_id
        self.role_id = role_id
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self._clock = clock
        self._sleep = sleep
        self._credential_factory = credential_factory
        self.logger = OperatorLogger(self.__class__.__name__)

    async def teardown(self, request: dict[str, Any]) -> None:
        """
        Remove everything the request may have created.

        Dependents go first, then the role assignment, then the application.
        Objects that are already gone count as removed. Identifiers come from
        both the journal and status; a missing identifier skips its delete.
        Any other failure aborts the sequence.
        """
        namespace = request["metadata"]["namespace"]
        name = request["metadata"]["name"]
        status = IdentityStatus.model_validate(request.get("status") or {})
        journal = read_journal(request)

        for kind in DEPENDENT_KINDS:
            existing = await self.store.get(kind, namespace, name)
            if existing is None:
                continue
            if not is_owned_by(existing, request):
                self.logger.warning(
                    f"Leaving {kind.value} {namespace}/{name} in place: not owned by this request",
                    resource_kind=kind.value,
                )
                continue
            await self.store.delete(kind, namespace, name)

        # Status may still name an identity that compensation replaced
        for assignment_id in _distinct(
            journal.role_assignment_id, status.role_assignment_id
        ):
            await self.provider.delete_role_assignment(assignment_id)
            self.logger.log_identity_operation(
                "delete_role_assignment",
                name,
                namespace,
                True,
                {"role_assignment_id": assignment_id},
            )

        for app_object_id in _distinct(journal.app_object_id, status.app_object_id):
            await self.provider.delete_application(app_object_id)
            self.logger.log_identity_operation(
                "delete_application",
                name,
                namespace,
                True,
                {"app_object_id": app_object_id},
            )

        metrics_collector.clear_secret_expiration(namespace, name)

    async def provision(
        self, request: dict[str, Any], spec: IdentityRequestSpec
    ) -> IdentityStatus:
        """
        Create the external identity and its dependents for a request whose
        AzureIdentity does not exist.

        Returns:
            The status that was written

        Raises:
            PermanentValidationError: A Secret or binding with the request's
                name belongs to something else
            TransientIOError: The role assignment kept failing
            ImmutableFieldError: The surviving identity was created for a
                different spec
        """
        namespace = request["metadata"]["namespace"]
        name = request["metadata"]["name"]

        secret = await self.store.get(ResourceKind.SECRET, namespace, name)
        binding = await self.store.get(ResourceKind.IDENTITY_BINDING, namespace, name)
        for kind, existing in (
            (ResourceKind.SECRET, secret),
            (ResourceKind.IDENTITY_BINDING, binding),
        ):
            if existing is not None and not is_owned_by(existing, request):
                raise PermanentValidationError(
                    f"{kind.value} {namespace}/{name} already exists and is not "
                    f"owned by this request",
                    user_action=f"Remove or rename the existing {kind.value}",
                )

        journal = read_journal(request)
        if journal.is_complete and self._secret_matches(secret, journal):
            self._check_journal_spec(journal, spec)
            self.logger.info(
                f"Credential for {namespace}/{name} survived, rebinding from journal",
                client_id=journal.client_id,
            )
            return await self._bind(request, spec, self._identity_from_journal(journal))

        if journal.has_external_resources or secret is not None or binding is not None:
            request = await self._compensate(request, journal, secret, binding)

        identity = await self._create_external_identity(request, spec)
        secret_body = build_secret_manifest(
            request, identity.client_id, identity.client_secret
        )
        await self.store.create(secret_body)
        return await self._bind(request, spec, identity)

    async def resume(
        self, request: dict[str, Any], spec: IdentityRequestSpec
    ) -> IdentityStatus:
        """
        Finish a pass that stopped after the AzureIdentity was written: ensure
        the binding exists, then write the status.
        """
        namespace = request["metadata"]["namespace"]
        name = request["metadata"]["name"]
        descriptor = await self.store.get(
            ResourceKind.IDENTITY_DESCRIPTOR, namespace, name
        )
        if descriptor is not None and not is_owned_by(descriptor, request):
            raise PermanentValidationError(
                f"{ResourceKind.IDENTITY_DESCRIPTOR.value} {namespace}/{name} "
                f"already exists and is not owned by this request",
                user_action="Remove or rename the existing AzureIdentity",
            )

        journal = read_journal(request)
        if not journal.is_complete:
            self.logger.warning(
                f"Journal for {namespace}/{name} is incomplete, provisioning again"
            )
            await self.store.delete(ResourceKind.IDENTITY_DESCRIPTOR, namespace, name)
            return await self.provision(request, spec)

        self._check_journal_spec(journal, spec)
        return await self._bind(request, spec, self._identity_from_journal(journal))

    def _check_journal_spec(
        self, journal: ProvisioningJournal, spec: IdentityRequestSpec
    ) -> None:
        """
        Refuse to rebind an identity created for a different spec.

        Raises:
            ImmutableFieldError: The spec changed after the external identity
                was created
        """
        current = spec.immutable_view()
        if journal.spec is not None and journal.spec != current:
            raise ImmutableFieldError(journal.changed_fields(current))

    def _secret_matches(
        self, secret: dict[str, Any] | None, journal: ProvisioningJournal
    ) -> bool:
        if secret is None:
            return False
        annotations = secret["metadata"].get("annotations") or {}
        return annotations.get(CLIENT_ID_ANNOTATION) == journal.client_id

    def _identity_from_journal(self, journal: ProvisioningJournal) -> ExternalIdentity:
        return ExternalIdentity(
            client_id=journal.client_id,
            tenant_id=journal.tenant_id,
            app_object_id=journal.app_object_id,
            service_principal_object_id=journal.service_principal_object_id,
            role_assignment_id=journal.role_assignment_id,
            secret_expiration=_parse_timestamp(journal.secret_expiration),
        )

    async def _compensate(
        self,
        request: dict[str, Any],
        journal: ProvisioningJournal,
        secret: dict[str, Any] | None,
        binding: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Delete leftovers of an interrupted pass and clear the journal."""
        namespace = request["metadata"]["namespace"]
        name = request["metadata"]["name"]
        self.logger.warning(
            f"Cleaning up partially provisioned identity for {namespace}/{name}",
            app_object_id=journal.app_object_id,
            role_assignment_id=journal.role_assignment_id,
        )

        if journal.role_assignment_id:
            await self.provider.delete_role_assignment(journal.role_assignment_id)
        if journal.app_object_id:
            await self.provider.delete_application(journal.app_object_id)
        if secret is not None:
            await self.store.delete(ResourceKind.SECRET, namespace, name)
        if binding is not None:
            await self.store.delete(ResourceKind.IDENTITY_BINDING, namespace, name)

        self.logger.log_identity_operation(
            "compensate",
            name,
            namespace,
            True,
            {
                "app_object_id": journal.app_object_id,
                "role_assignment_id": journal.role_assignment_id,
            },
        )
        if journal.has_external_resources:
            request = await self._record(request, ProvisioningJournal())
        return request

    async def _record(
        self, request: dict[str, Any], journal: ProvisioningJournal
    ) -> dict[str, Any]:
        """Persist the journal on the request, re-reading once on a conflict."""
        try:
            return await self.store.update(with_journal(request, journal))
        except ConflictError:
            namespace = request["metadata"]["namespace"]
            name = request["metadata"]["name"]
            current = await self.store.get(
                ResourceKind.IDENTITY_REQUEST, namespace, name
            )
            if current is None:
                raise
            return await self.store.update(with_journal(current, journal))

    async def _create_external_identity(
        self, request: dict[str, Any], spec: IdentityRequestSpec
    ) -> ExternalIdentity:
        namespace = request["metadata"]["namespace"]
        name = request["metadata"]["name"]

        application = await self.provider.create_application(spec.registration_name)
        journal = ProvisioningJournal(
            app_object_id=application.app_object_id,
            client_id=application.client_id,
            tenant_id=application.tenant_id,
            spec=spec.immutable_view(),
        )
        request = await self._record(request, journal)
        self.logger.log_identity_operation(
            "create_application",
            name,
            namespace,
            True,
            {
                "app_object_id": application.app_object_id,
                "client_id": application.client_id,
            },
        )

        valid_from = self._clock()
        valid_to = valid_from + spec.credential_lifetime
        principal = await self.provider.create_service_principal(
            application.client_id,
            self._credential_factory(),
            valid_from,
            valid_to,
            spec.tags,
        )
        journal = journal.model_copy(
            update={
                "service_principal_object_id": principal.object_id,
                "secret_expiration": format_timestamp(valid_to),
            }
        )
        request = await self._record(request, journal)
        self.logger.log_identity_operation(
            "create_service_principal",
            name,
            namespace,
            True,
            {
                "service_principal_object_id": principal.object_id,
                "secret_expiration": journal.secret_expiration,
            },
        )

        scope = spec.role_assignment_scope(self.subscription_id)
        assignment = await self._assign_role(namespace, scope, principal.object_id)
        journal = journal.model_copy(
            update={"role_assignment_id": assignment.assignment_id}
        )
        await self._record(request, journal)
        self.logger.log_identity_operation(
            "create_role_assignment",
            name,
            namespace,
            True,
            {"role_assignment_id": assignment.assignment_id, "scope": scope},
        )

        return ExternalIdentity(
            client_id=application.client_id,
            tenant_id=application.tenant_id,
            app_object_id=application.app_object_id,
            service_principal_object_id=principal.object_id,
            role_assignment_id=assignment.assignment_id,
            secret_valid_from=valid_from,
            secret_expiration=valid_to,
            client_secret=principal.credential_value,
        )

    async def _assign_role(
        self, namespace: str, scope: str, principal_id: str
    ) -> RoleAssignment:
        """
        Create the role assignment with bounded exponential backoff.

        A freshly created principal may not be visible to ARM yet, so
        retryable provider errors are retried up to ``max_attempts`` times.

        Raises:
            TransientIOError: All attempts failed with retryable errors
        """
        delay = self.initial_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.provider.create_role_assignment(
                    scope, principal_id, self.role_id
                )
            except OperatorError as e:
                if not e.retryable:
                    raise
                if attempt == self.max_attempts:
                    raise TransientIOError(
                        f"Role assignment for principal {principal_id} on {scope} "
                        f"failed after {self.max_attempts} attempts: {e}"
                    ) from e
                metrics_collector.record_role_assignment_retry(namespace)
                self.logger.warning(
                    f"Role assignment attempt {attempt} failed, retrying in {delay}s: {e}",
                    principal_id=principal_id,
                )
                await self._sleep(delay)
                delay = min(delay * self.backoff_factor, self.max_delay)

        raise TransientIOError(
            f"Role assignment for principal {principal_id} was not attempted"
        )

    async def _ensure(self, body: dict[str, Any], request: dict[str, Any]) -> None:
        """Create a dependent, keeping an existing one this request owns."""
        try:
            await self.store.create(body)
        except AlreadyExistsError:
            kind = ResourceKind(body["kind"])
            namespace = body["metadata"]["namespace"]
            name = body["metadata"]["name"]
            existing = await self.store.get(kind, namespace, name)
            if existing is None:
                raise
            if not is_owned_by(existing, request):
                raise PermanentValidationError(
                    f"{kind.value} {namespace}/{name} already exists and is not "
                    f"owned by this request",
                    user_action=f"Remove or rename the existing {kind.value}",
                ) from None
            self.logger.debug(f"Keeping existing {kind.value} {namespace}/{name}")

    async def _bind(
        self,
        request: dict[str, Any],
        spec: IdentityRequestSpec,
        identity: ExternalIdentity,
    ) -> IdentityStatus:
        """Write the AzureIdentity and binding, then the status, in that order."""
        namespace = request["metadata"]["namespace"]
        name = request["metadata"]["name"]

        await self._ensure(
            build_azure_identity_manifest(
                request, identity.client_id, identity.tenant_id
            ),
            request,
        )
        await self._ensure(
            build_azure_identity_binding_manifest(request, spec.pod_selector), request
        )

        status = identity.to_status(binding_name=name, spec_hash=spec.spec_hash())
        await self.store.update_status(
            {**request, "status": status.to_status_fields()}
        )
        metrics_collector.update_secret_expiration(
            namespace, name, identity.secret_expiration.timestamp()
        )
        self.logger.info(
            f"Identity for {namespace}/{name} is bound",
            client_id=identity.client_id,
            binding_name=name,
        )
        return status
