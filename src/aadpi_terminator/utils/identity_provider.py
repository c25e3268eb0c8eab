"""
Identity provider client for Azure AD applications and role assignments.

The reconciler depends only on the IdentityProviderClient protocol. The
GraphIdentityProviderClient implementation talks to Microsoft Graph v1.0
for applications and service principals, and to Azure Resource Manager for
role assignments.

The client handles:
- Bearer tokens from the injected Authorizer, with one re-authentication on 401
- Deterministic role assignment names so repeated attempts are idempotent
- Translation of HTTP failures into IdentityProviderError
- Circuit breaking, Prometheus call metrics and a client span per request
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import aiobreaker
import httpx

from aadpi_terminator.constants import ROLE_ASSIGNMENT_API_VERSION
from aadpi_terminator.errors import IdentityProviderError
from aadpi_terminator.models.identity import format_timestamp
from aadpi_terminator.observability.metrics import metrics_collector
from aadpi_terminator.observability.tracing import provider_span
from aadpi_terminator.utils.authorizer import Authorizer
from aadpi_terminator.utils.circuit_breaker import IdentityProviderCircuitBreaker

logger = logging.getLogger(__name__)

PASSWORD_DISPLAY_NAME = "aadpi-terminator"


@dataclass
class Application:
    app_object_id: str
    client_id: str
    tenant_id: str


@dataclass
class ServicePrincipal:
    object_id: str
    credential_value: str = field(repr=False)


@dataclass
class RoleAssignment:
    assignment_id: str


class IdentityProviderClient(Protocol):
    """Narrow interface to the external identity provider."""

    async def create_application(self, display_name: str) -> Application: ...

    async def create_service_principal(
        self,
        client_id: str,
        credential_value: str,
        valid_from: datetime,
        valid_to: datetime,
        tags: list[str],
    ) -> ServicePrincipal: ...

    async def create_role_assignment(
        self, scope: str, principal_id: str, role_id: str
    ) -> RoleAssignment: ...

    async def delete_application(self, app_object_id: str) -> bool: ...

    async def delete_role_assignment(self, assignment_id: str) -> bool: ...


def role_assignment_name(principal_id: str, role_id: str, scope: str) -> str:
    """Stable role assignment name for a principal, role and scope."""
    return str(
        uuid.uuid5(uuid.NAMESPACE_URL, f"{principal_id}:{role_id}:{scope.lower()}")
    )


def _subscription_prefix(scope: str) -> str:
    parts = scope.strip("/").split("/")
    if len(parts) < 2 or parts[0].lower() != "subscriptions":
        raise IdentityProviderError(
            f"Role assignment scope {scope!r} is not below a subscription",
            retryable=False,
        )
    return f"/subscriptions/{parts[1]}"


def _error_details(response: httpx.Response) -> tuple[str | None, str]:
    """Extract (code, message) from a Graph or ARM error body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:1024] or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return None, response.text[:1024]
    return error.get("code"), error.get("message") or ""


class GraphIdentityProviderClient:
    """IdentityProviderClient backed by Microsoft Graph and Azure Resource Manager."""

    def __init__(
        self,
        authorizer: Authorizer,
        graph_endpoint: str = "https://graph.microsoft.com",
        arm_endpoint: str = "https://management.azure.com",
        user_agent: str = "aadpi-terminator",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: IdentityProviderCircuitBreaker | None = None,
    ):
        """
        Initialize the client.

        Args:
            authorizer: Shared token source
            graph_endpoint: Microsoft Graph base URL
            arm_endpoint: Azure Resource Manager base URL
            user_agent: User-Agent header sent with every request
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used by tests
            breaker: Optional circuit breaker shared by all calls
        """
        self.authorizer = authorizer
        self.graph_url = graph_endpoint.rstrip("/") + "/v1.0"
        self.arm_url = arm_endpoint.rstrip("/")
        self.breaker = breaker
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        scope: str,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        """
        Send one authenticated request.

        Raises only for provider-side failures (429, 5xx, transport), so the
        circuit breaker counts nothing else. Client errors are returned.
        """
        response = None
        for attempt in range(2):
            token = await self.authorizer.get_token(scope)
            try:
                response = await self._client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as e:
                logger.error(f"Request failed: {method} {url} - {e}")
                raise IdentityProviderError(
                    f"Request to {url} failed: {e}", retryable=True
                ) from e

            if response.status_code == 401 and attempt == 0:
                logger.warning("Received 401, refreshing access token")
                await self.authorizer.invalidate(scope)
                continue
            break

        if response.status_code == 429 or response.status_code >= 500:
            code, message = _error_details(response)
            logger.error(
                f"Request failed: {method} {url}",
                extra={"http_status": response.status_code, "error_code": code},
            )
            raise IdentityProviderError(
                message, status_code=response.status_code, error_code=code
            )
        return response

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        scope: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        tolerated: tuple[int, ...] = (),
    ) -> httpx.Response:
        """Send a request through the breaker and raise on unexpected statuses."""
        start = time.monotonic()
        success = False
        try:
            with provider_span(operation, method, url) as span:
                if self.breaker is not None:
                    try:
                        response = await self.breaker.call(
                            self._send, method, url, scope, json, params
                        )
                    except aiobreaker.CircuitBreakerError as e:
                        raise IdentityProviderError(
                            f"Circuit breaker {self.breaker.name} is open: {e}",
                            retryable=True,
                        ) from e
                else:
                    response = await self._send(method, url, scope, json, params)
                span.set_attribute("http.response.status_code", response.status_code)

            if not response.is_success and response.status_code not in tolerated:
                code, message = _error_details(response)
                logger.error(
                    f"{operation} failed: {method} {url}",
                    extra={"http_status": response.status_code, "error_code": code},
                )
                raise IdentityProviderError(
                    f"{operation}: {message}",
                    status_code=response.status_code,
                    error_code=code,
                )
            success = True
            return response
        finally:
            metrics_collector.record_identity_provider_call(
                operation, success, time.monotonic() - start
            )

    async def create_application(self, display_name: str) -> Application:
        response = await self._request(
            "create_application",
            "POST",
            f"{self.graph_url}/applications",
            self.authorizer.graph_scope,
            json={"displayName": display_name, "signInAudience": "AzureADMyOrg"},
        )
        body = response.json()
        application = Application(
            app_object_id=body["id"],
            client_id=body["appId"],
            tenant_id=self.authorizer.tenant_id,
        )
        logger.info(
            f"Created application {display_name}",
            extra={
                "app_object_id": application.app_object_id,
                "client_id": application.client_id,
            },
        )
        return application

    async def create_service_principal(
        self,
        client_id: str,
        credential_value: str,
        valid_from: datetime,
        valid_to: datetime,
        tags: list[str],
    ) -> ServicePrincipal:
        """
        Create the service principal and attach a password credential.

        Graph generates the secret text itself; the returned value replaces
        the proposed one when present.
        """
        response = await self._request(
            "create_service_principal",
            "POST",
            f"{self.graph_url}/servicePrincipals",
            self.authorizer.graph_scope,
            json={"appId": client_id, "tags": list(tags)},
        )
        object_id = response.json()["id"]

        response = await self._request(
            "add_password",
            "POST",
            f"{self.graph_url}/servicePrincipals/{object_id}/addPassword",
            self.authorizer.graph_scope,
            json={
                "passwordCredential": {
                    "displayName": PASSWORD_DISPLAY_NAME,
                    "startDateTime": format_timestamp(valid_from),
                    "endDateTime": format_timestamp(valid_to),
                    "secretText": credential_value,
                }
            },
        )
        issued = response.json().get("secretText")
        logger.info(
            "Created service principal",
            extra={"client_id": client_id, "service_principal_object_id": object_id},
        )
        return ServicePrincipal(
            object_id=object_id, credential_value=issued or credential_value
        )

    async def create_role_assignment(
        self, scope: str, principal_id: str, role_id: str
    ) -> RoleAssignment:
        name = role_assignment_name(principal_id, role_id, scope)
        assignment_id = (
            f"{scope.rstrip('/')}/providers/Microsoft.Authorization/roleAssignments/{name}"
        )
        role_definition_id = (
            f"{_subscription_prefix(scope)}/providers/Microsoft.Authorization/"
            f"roleDefinitions/{role_id}"
        )
        response = await self._request(
            "create_role_assignment",
            "PUT",
            f"{self.arm_url}{assignment_id}",
            self.authorizer.arm_scope,
            json={
                "properties": {
                    "roleDefinitionId": role_definition_id,
                    "principalId": principal_id,
                    "principalType": "ServicePrincipal",
                }
            },
            params={"api-version": ROLE_ASSIGNMENT_API_VERSION},
            tolerated=(409,),
        )
        if response.status_code == 409:
            code, message = _error_details(response)
            if code != "RoleAssignmentExists":
                raise IdentityProviderError(
                    f"create_role_assignment: {message}",
                    status_code=409,
                    error_code=code,
                )
            logger.info(f"Role assignment {name} already exists")
            return RoleAssignment(assignment_id=assignment_id)

        assignment = RoleAssignment(assignment_id=response.json().get("id", assignment_id))
        logger.info(
            f"Assigned role {role_id} on {scope}",
            extra={"principal_id": principal_id, "role_assignment_id": assignment.assignment_id},
        )
        return assignment

    async def delete_application(self, app_object_id: str) -> bool:
        response = await self._request(
            "delete_application",
            "DELETE",
            f"{self.graph_url}/applications/{app_object_id}",
            self.authorizer.graph_scope,
            tolerated=(404,),
        )
        if response.status_code == 404:
            logger.info(f"Application {app_object_id} already absent")
            return False
        logger.info(f"Deleted application {app_object_id}")
        return True

    async def delete_role_assignment(self, assignment_id: str) -> bool:
        response = await self._request(
            "delete_role_assignment",
            "DELETE",
            f"{self.arm_url}/{assignment_id.lstrip('/')}",
            self.authorizer.arm_scope,
            params={"api-version": ROLE_ASSIGNMENT_API_VERSION},
            tolerated=(404,),
        )
        # ARM answers 204 when the assignment does not exist
        if response.status_code in (204, 404):
            logger.info(f"Role assignment {assignment_id} already absent")
            return False
        logger.info(f"Deleted role assignment {assignment_id}")
        return True
