from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from ...core.credential_store import CredentialStore, build_credential_store
from ...core.expiry import utcnow
from ...core.models import Credential
from ...core.settings import BitrixSettings, Settings
from .install import InstallHandler
from .invoker import Clock, ResilientInvoker
from .token_authority import TokenAuthority

USER_AGENT = "CRMConnector/0.1"


# PUBLIC_INTERFACE
def build_http_client(settings: BitrixSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Shared outbound client; every request also passes the timeout explicitly."""
    return httpx.AsyncClient(
        transport=transport,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        follow_redirects=False,
    )


class BitrixConnector:
    """Bitrix24 integration core: install handling plus resilient REST invocation for one app."""

    id = "bitrix"
    name = "Bitrix24"

    def __init__(self, settings: BitrixSettings, store: CredentialStore, client: httpx.AsyncClient, clock: Clock = utcnow):
        self.settings = settings
        self.store = store
        self.client = client
        self.authority = TokenAuthority(settings, store, client)
        self.invoker = ResilientInvoker(settings, store, self.authority, client, clock=clock)
        self.installer = InstallHandler(settings, store, self.authority)

    # PUBLIC_INTERFACE
    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utcnow,
    ) -> "BitrixConnector":
        """Build the connector from application settings, optionally overriding store and transport."""
        return cls(
            settings.bitrix,
            store if store is not None else build_credential_store(settings),
            build_http_client(settings.bitrix, transport),
            clock=clock,
        )

    # PUBLIC_INTERFACE
    async def install_via_code(self, code: str, provider_domain: str) -> Credential:
        return await self.installer.install_via_code(code, provider_domain)

    # PUBLIC_INTERFACE
    async def install_via_push(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_in_seconds: Any,
        provider_domain_hint: Optional[str] = None,
        client_endpoint: Optional[str] = None,
    ) -> Credential:
        return await self.installer.install_via_push(
            tenant_id,
            access_token,
            refresh_token,
            expires_in_seconds,
            provider_domain_hint=provider_domain_hint,
            client_endpoint=client_endpoint,
        )

    # PUBLIC_INTERFACE
    async def invoke(self, tenant_id: str, remote_method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single entry point for every remote CRM operation."""
        return await self.invoker.invoke(tenant_id, remote_method, payload)

    async def aclose(self) -> None:
        await self.client.aclose()
