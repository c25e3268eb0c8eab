"""
Access token source for Microsoft Graph and Azure Resource Manager.

The Authorizer is constructed once at operator startup and injected into
the identity provider client. It wraps an azure-identity credential and
keeps a per-scope token cache guarded by an asyncio lock, so concurrent
reconciliation passes share one token per audience and refresh it once,
shortly before it expires.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import DeviceCodeCredential
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential

from aadpi_terminator.constants import GRAPH_SCOPE_SUFFIX
from aadpi_terminator.errors import (
    AuthorizationError,
    ConfigurationError,
    TransientIOError,
)

logger = logging.getLogger(__name__)


class Authorizer:
    """Cached bearer tokens per audience, refreshed ahead of expiry."""

    def __init__(
        self,
        credential: Any,
        tenant_id: str,
        graph_endpoint: str = "https://graph.microsoft.com",
        arm_endpoint: str = "https://management.azure.com",
        refresh_margin_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the authorizer.

        Args:
            credential: azure-identity credential (async, or sync for device code flow)
            tenant_id: Tenant the applications are registered in
            graph_endpoint: Microsoft Graph base URL
            arm_endpoint: Azure Resource Manager base URL
            refresh_margin_seconds: Refresh tokens expiring within this window
            clock: Time source, injectable for tests
        """
        self._credential = credential
        self.tenant_id = tenant_id
        self.graph_scope = graph_endpoint.rstrip("/") + GRAPH_SCOPE_SUFFIX
        self.arm_scope = arm_endpoint.rstrip("/") + GRAPH_SCOPE_SUFFIX
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._tokens: dict[str, AccessToken] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "Authorizer":
        """Build the credential selected by AZURE_AUTH_MODE."""
        if not settings.azure_tenant_id:
            raise ConfigurationError("AZURE_TENANT_ID is required")

        mode = settings.azure_auth_mode
        if mode == "client_secret":
            if not settings.azure_client_id or not settings.azure_client_secret:
                raise ConfigurationError(
                    "AZURE_CLIENT_ID and AZURE_CLIENT_SECRET are required "
                    "when AZURE_AUTH_MODE=client_secret"
                )
            credential: Any = ClientSecretCredential(
                tenant_id=settings.azure_tenant_id,
                client_id=settings.azure_client_id,
                client_secret=settings.azure_client_secret,
                authority=settings.azure_authority_host,
            )
        elif mode == "device_code":
            # No async device code credential exists; calls are moved to a thread
            credential = DeviceCodeCredential(
                tenant_id=settings.azure_tenant_id,
                client_id=settings.azure_client_id or None,
                authority=settings.azure_authority_host,
            )
        else:
            credential = DefaultAzureCredential(authority=settings.azure_authority_host)

        logger.info(f"Azure authorizer configured with {mode} credential")
        return cls(
            credential=credential,
            tenant_id=settings.azure_tenant_id,
            graph_endpoint=settings.graph_endpoint,
            arm_endpoint=settings.arm_endpoint,
            refresh_margin_seconds=settings.token_refresh_margin_seconds,
        )

    def _is_fresh(self, token: AccessToken | None) -> bool:
        return token is not None and token.expires_on - self._clock() > self._refresh_margin

    async def _acquire(self, scope: str) -> AccessToken:
        get_token = self._credential.get_token
        if inspect.iscoroutinefunction(get_token):
            return await get_token(scope)
        return await asyncio.to_thread(get_token, scope)

    async def get_token(self, scope: str) -> str:
        """
        Bearer token for the given scope.

        Raises:
            AuthorizationError: Credentials were rejected by Azure AD
            TransientIOError: Azure AD could not be reached
        """
        async with self._lock:
            token = self._tokens.get(scope)
            if self._is_fresh(token):
                return token.token

            logger.debug(f"Acquiring access token for {scope}")
            try:
                token = await self._acquire(scope)
            except ClientAuthenticationError as e:
                raise AuthorizationError(
                    f"Azure AD rejected the operator credentials for {scope}: {e.message}"
                ) from e
            except AzureError as e:
                raise TransientIOError(
                    f"Failed to acquire access token for {scope}: {e.message}"
                ) from e

            self._tokens[scope] = token
            return token.token

    async def get_graph_token(self) -> str:
        return await self.get_token(self.graph_scope)

    async def get_arm_token(self) -> str:
        return await self.get_token(self.arm_scope)

    async def invalidate(self, scope: str) -> None:
        """Drop a cached token, e.g. after the API answered 401."""
        async with self._lock:
            self._tokens.pop(scope, None)

    async def close(self) -> None:
        close = getattr(self._credential, "close", None)
        if close is None:
            return
        if inspect.iscoroutinefunction(close):
            await close()
        else:
            close()
