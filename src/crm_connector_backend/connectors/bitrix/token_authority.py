from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from ...core.credential_store import CredentialStore
from ...core.errors import (
    ConfigurationError,
    ConnectorError,
    InstallPayloadError,
    InvalidCredentialError,
    ProviderAuthError,
    TransportError,
)
from ...core.logging import get_logger
from ...core.models import TokenPair
from ...core.observability import increment_metric, mask_secret_value
from ...core.settings import BitrixSettings
from .domains import normalize_domain
from .errors import error_detail

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TokenAuthority:
    """Exchanges authorization codes and refresh tokens at the portal's token endpoint.

    Every successful exchange is persisted through the credential store before the
    pair is returned. Refreshes are serialized per tenant because Bitrix24 rotates
    refresh tokens: the previous one stops working as soon as a new pair is issued.
    """

    def __init__(self, settings: BitrixSettings, store: CredentialStore, client: httpx.AsyncClient):
        self.settings = settings
        self.store = store
        self.client = client
        # One lock per tenant seen by this process, never evicted. Bounded by the number
        # of installed portals; a lock must outlive any waiter, so no weak references.
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    def _get_refresh_lock(self, tenant_id: str) -> asyncio.Lock:
        """Get or create the single-flight refresh lock for a tenant."""
        lock = self._refresh_locks.get(tenant_id)
        if lock is None:
            lock = self._refresh_locks[tenant_id] = asyncio.Lock()
        return lock

    def _require(self, *names: str) -> Dict[str, str]:
        values = {name: getattr(self.settings, name) for name in names}
        missing = [name for name, value in values.items() if not value]
        if missing:
            logger.error("Missing OAuth config values", extra={"missing": missing})
            raise ConfigurationError(
                "Missing Bitrix24 OAuth configuration: " + ", ".join(missing),
                details={"missing": missing},
            )
        return values

    @staticmethod
    def token_url(domain: str) -> str:
        return f"https://{domain}/oauth/token/"

    async def _exchange(self, domain: str, form: Dict[str, str], *, tenant_id: Optional[str] = None) -> TokenPair:
        url = self.token_url(domain)
        try:
            response = await self.client.post(url, data=form, timeout=self.settings.REQUEST_TIMEOUT_SECONDS)
        except httpx.TransportError as exc:
            raise TransportError(f"Token endpoint unreachable: {type(exc).__name__}", url=url) from exc

        try:
            body: Any = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400 or not isinstance(body, dict) or "error" in body:
            detail = error_detail(response)
            logger.warning(
                "Token exchange rejected",
                extra={
                    "grant_type": form.get("grant_type"),
                    "upstream_status": response.status_code,
                    "error": detail.error,
                },
            )
            raise ProviderAuthError(
                f"Token exchange rejected: {detail.error_description or detail.error or 'unexpected response'}",
                error=detail.error,
                error_description=detail.error_description,
                status_code=response.status_code,
            )

        access_token = body.get("access_token")
        member_id = body.get("member_id") or tenant_id
        if not access_token or not member_id:
            raise ProviderAuthError(
                "Token response is missing access_token or member_id",
                status_code=response.status_code,
            )
        raw_expires_in = body.get("expires_in")
        try:
            expires_in = DEFAULT_EXPIRES_IN if raw_expires_in is None else int(raw_expires_in)
        except (TypeError, ValueError):
            expires_in = -1
        if expires_in < 0:
            logger.warning("Token response has malformed expires_in", extra={"grant_type": form.get("grant_type")})
            raise ProviderAuthError(
                "Malformed token response: expires_in must be a non-negative integer",
                error="malformed_token_response",
                status_code=response.status_code,
            )
        refresh_token = body.get("refresh_token")
        return TokenPair(
            access_token=str(access_token),
            refresh_token=str(refresh_token) if refresh_token else None,
            expires_in_seconds=expires_in,
            tenant_id=str(member_id),
        )

    # PUBLIC_INTERFACE
    async def exchange_authorization_code(self, code: str, provider_domain: str) -> TokenPair:
        """Exchange an authorization code for a token pair and store it for the returned member_id."""
        config = self._require("CLIENT_ID", "CLIENT_SECRET", "REDIRECT_URI", "OAUTH_SCOPE")
        domain = normalize_domain(provider_domain)
        if not domain:
            raise InstallPayloadError("A provider domain is required for code exchange", details={"provider_domain": provider_domain})

        pair = await self._exchange(
            domain,
            {
                "grant_type": "authorization_code",
                "client_id": config["CLIENT_ID"],
                "client_secret": config["CLIENT_SECRET"],
                "code": code,
                "redirect_uri": config["REDIRECT_URI"],
                "scope": config["OAUTH_SCOPE"],
            },
        )
        async with self._get_refresh_lock(pair.tenant_id):
            await self.store.upsert(
                pair.tenant_id,
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                expires_in_seconds=pair.expires_in_seconds,
                provider_domain=domain,
            )
        logger.info("Obtained tokens via authorization code", extra={"tenant_id": pair.tenant_id, "provider_domain": domain})
        return pair

    # PUBLIC_INTERFACE
    async def exchange_refresh_token(
        self,
        tenant_id: str,
        *,
        superseded_access_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        """Exchange the tenant's stored refresh token for a new pair and persist it.

        When ``superseded_access_token`` is given and the stored access token has
        already moved on (another task refreshed while this one waited for the lock),
        the stored pair is returned without contacting the provider.
        """
        config = self._require("CLIENT_ID", "CLIENT_SECRET")
        async with self._get_refresh_lock(tenant_id):
            credential = await self.store.get(tenant_id)
            if superseded_access_token is not None and credential.access_token != superseded_access_token:
                increment_metric("token_refresh_skipped_total")
                logger.info("Token already rotated by a concurrent refresh", extra={"tenant_id": tenant_id})
                return TokenPair.from_credential(credential)

            if not credential.refresh_token:
                raise InvalidCredentialError(
                    f"No refresh token stored for tenant '{tenant_id}'",
                    details={"tenant_id": tenant_id},
                )

            try:
                pair = await self._exchange(
                    credential.provider_domain,
                    {
                        "grant_type": "refresh_token",
                        "client_id": config["CLIENT_ID"],
                        "client_secret": config["CLIENT_SECRET"],
                        "refresh_token": credential.refresh_token,
                    },
                    tenant_id=tenant_id,
                )
            except ConnectorError:
                increment_metric("token_refresh_failures_total")
                raise

            if pair.tenant_id != tenant_id:
                logger.warning(
                    "Refresh response names a different member_id; keeping stored tenant",
                    extra={"tenant_id": tenant_id, "response_member_id": pair.tenant_id},
                )
            pair = pair.model_copy(
                update={"tenant_id": tenant_id, "refresh_token": pair.refresh_token or credential.refresh_token}
            )
            await self.store.upsert(
                tenant_id,
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                expires_in_seconds=pair.expires_in_seconds,
                provider_domain=credential.provider_domain,
                now=now,
            )
        increment_metric("token_refresh_total")
        logger.info("Token refreshed", extra={"tenant_id": tenant_id, "token_hint": mask_secret_value(pair.access_token)})
        return pair
