from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import ValidationError

from ...core.credential_store import CredentialStore
from ...core.errors import DomainResolutionError, InstallPayloadError
from ...core.logging import get_logger
from ...core.models import Credential
from ...core.observability import bind_tenant, increment_metric
from ...core.settings import BitrixSettings
from .domains import domain_from_endpoint, normalize_domain
from .token_authority import TokenAuthority

logger = get_logger(__name__)

INSTALL_EVENT = "ONAPPINSTALL"


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _parse_expires_in(value: Any) -> int:
    try:
        expires_in = int(value)
    except (TypeError, ValueError):
        raise InstallPayloadError("expires_in must be an integer number of seconds", details={"expires_in": value})
    if expires_in < 0:
        raise InstallPayloadError("expires_in must not be negative", details={"expires_in": value})
    return expires_in


class InstallHandler:
    """Turns provider install callbacks into the tenant's first stored credential."""

    def __init__(self, settings: BitrixSettings, store: CredentialStore, authority: TokenAuthority):
        self.settings = settings
        self.store = store
        self.authority = authority

    # PUBLIC_INTERFACE
    async def install_via_code(self, code: str, provider_domain: str) -> Credential:
        """Complete the authorization-code flow and return the stored credential."""
        if not code:
            raise InstallPayloadError("Authorization code is required")
        pair = await self.authority.exchange_authorization_code(code, provider_domain)
        bind_tenant(pair.tenant_id)
        increment_metric("installs_total")
        return await self.store.get(pair.tenant_id)

    async def resolve_domain(
        self,
        tenant_id: str,
        provider_domain_hint: Optional[str] = None,
        client_endpoint: Optional[str] = None,
    ) -> str:
        """Pick the portal domain for a push install.

        Order: explicit hint, client endpoint host, previously stored credential,
        configured default. Raises DomainResolutionError when all are empty.
        """
        domain = normalize_domain(provider_domain_hint)
        if domain:
            return domain

        domain = domain_from_endpoint(client_endpoint)
        if domain:
            return domain
        if client_endpoint:
            logger.warning("Invalid client_endpoint URL", extra={"tenant_id": tenant_id})

        existing = await self.store.find(tenant_id)
        if existing is not None:
            return existing.provider_domain

        domain = normalize_domain(self.settings.DEFAULT_DOMAIN)
        if domain:
            return domain

        raise DomainResolutionError(
            "Could not determine Bitrix24 domain",
            details={"tenant_id": tenant_id},
        )

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
        """Store tokens the provider pushed on installation; no code exchange involved."""
        # JSON bodies may carry numeric ids
        tenant_id, access_token, refresh_token = (_text(v) for v in (tenant_id, access_token, refresh_token))
        provider_domain_hint = _text(provider_domain_hint) or None
        client_endpoint = _text(client_endpoint) or None
        missing = [
            name
            for name, value in (("tenant_id", tenant_id), ("access_token", access_token), ("refresh_token", refresh_token))
            if not value
        ]
        if missing:
            raise InstallPayloadError("Missing core fields in install payload", details={"missing": missing})
        expires_in = _parse_expires_in(expires_in_seconds)
        bind_tenant(tenant_id)

        domain = await self.resolve_domain(tenant_id, provider_domain_hint, client_endpoint)
        try:
            credential = await self.store.upsert(
                tenant_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in_seconds=expires_in,
                provider_domain=domain,
            )
        except ValidationError as exc:
            raise InstallPayloadError(
                "Install payload does not form a valid credential",
                details={"fields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()]},
            ) from exc
        increment_metric("installs_total")
        logger.info("Saved tokens from install event", extra={"tenant_id": tenant_id, "provider_domain": domain})
        return credential

    # PUBLIC_INTERFACE
    async def handle_install_event(self, params: Mapping[str, Any]) -> Credential:
        """Dispatch a GET install callback: a ``code`` wins, else an ONAPPINSTALL event with tokens."""
        code = params.get("code")
        if code:
            return await self.install_via_code(code, params.get("domain") or "")

        if params.get("event") == INSTALL_EVENT and params.get("auth_id") and params.get("refresh_id") and params.get("domain"):
            return await self.install_via_push(
                params.get("member_id") or "",
                params["auth_id"],
                params["refresh_id"],
                params.get("expires_in"),
                provider_domain_hint=params["domain"],
            )

        logger.warning("Missing required parameters for install callback")
        raise InstallPayloadError("Invalid install request parameters")
