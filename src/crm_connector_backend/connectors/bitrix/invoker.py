# PUBLIC_INTERFACE
"""
Resilient invocation of Bitrix24 REST methods.

Every remote call goes through `ResilientInvoker.invoke`, which

1. refreshes the tenant's token ahead of expiry (proactive refresh),
2. calls ``https://{domain}/rest/{method}`` with ``auth=<access token>``,
3. on an authentication rejection refreshes once and retries once (reactive refresh).

Timeouts and network failures surface as `TransportError` and never spend the
single refresh-retry.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from ...core.credential_store import CredentialStore
from ...core.errors import ConnectorError, RefreshFailedError, RemoteCallFailedError, TransportError
from ...core.expiry import is_stale, utcnow
from ...core.logging import get_logger
from ...core.models import Credential
from ...core.observability import bind_tenant, increment_metric
from ...core.settings import BitrixSettings
from .errors import RemoteErrorKind, classify_remote_error, error_detail, is_success
from .token_authority import TokenAuthority

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class ResilientInvoker:
    """Single entry point for calling remote methods on behalf of a tenant."""

    def __init__(
        self,
        settings: BitrixSettings,
        store: CredentialStore,
        authority: TokenAuthority,
        client: httpx.AsyncClient,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.authority = authority
        self.client = client
        self.clock = clock

    @staticmethod
    def rest_url(domain: str, remote_method: str) -> str:
        return f"https://{domain}/rest/{remote_method.strip('/')}"

    async def _refresh(self, tenant_id: str, superseded_access_token: str, *, reactive: bool) -> Credential:
        try:
            await self.authority.exchange_refresh_token(
                tenant_id,
                superseded_access_token=superseded_access_token,
                now=self.clock(),
            )
        except ConnectorError as exc:
            logger.error(
                "Token refresh failed",
                extra={"tenant_id": tenant_id, "reactive": reactive, "error_code": exc.code},
            )
            raise RefreshFailedError(tenant_id, exc) from exc
        if reactive:
            increment_metric("reactive_refresh_total")
        return await self.store.get(tenant_id)

    async def _send(self, credential: Credential, remote_method: str, payload: Dict[str, Any]) -> httpx.Response:
        url = self.rest_url(credential.provider_domain, remote_method)
        increment_metric("remote_calls_total")
        try:
            return await self.client.post(
                url,
                params={"auth": credential.access_token},
                json=payload,
                timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
            )
        except httpx.TransportError as exc:
            increment_metric("remote_call_errors_total")
            logger.warning(
                "Remote call transport failure",
                extra={"tenant_id": credential.tenant_id, "remote_method": remote_method, "error": type(exc).__name__},
            )
            raise TransportError(f"Remote call '{remote_method}' failed: {type(exc).__name__}", url=url) from exc

    def _failure(self, credential: Credential, remote_method: str, response: httpx.Response, *, retried: bool) -> ConnectorError:
        increment_metric("remote_call_errors_total")
        detail = error_detail(response)
        if classify_remote_error(response) is RemoteErrorKind.TRANSPORT:
            return TransportError(
                f"Remote call '{remote_method}' failed with HTTP {response.status_code}",
                url=self.rest_url(credential.provider_domain, remote_method),
                status_code=response.status_code,
            )
        return RemoteCallFailedError(
            remote_method,
            error=detail.error,
            error_description=detail.error_description,
            status_code=detail.status_code,
            retried=retried,
        )

    # PUBLIC_INTERFACE
    async def invoke(self, tenant_id: str, remote_method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call ``remote_method`` for the tenant and return the provider's success envelope unchanged.

        Raises:
            NotFoundError: the tenant has not been installed.
            RefreshFailedError: a required refresh failed; the call was not (re)sent.
            RemoteCallFailedError: non-auth failure, or failure after the single retry.
            TransportError: timeout or network failure.
        """
        bind_tenant(tenant_id)
        body = payload or {}
        credential = await self.store.get(tenant_id)

        if is_stale(credential, self.clock(), self.settings.REFRESH_SAFETY_MARGIN_SECONDS):
            logger.warning("Token expired or about to expire, refreshing", extra={"tenant_id": tenant_id})
            credential = await self._refresh(tenant_id, credential.access_token, reactive=False)

        response = await self._send(credential, remote_method, body)
        if is_success(response):
            return response.json()

        kind = classify_remote_error(response)
        detail = error_detail(response)
        logger.error(
            "Remote API error",
            extra={
                "tenant_id": tenant_id,
                "remote_method": remote_method,
                "upstream_status": response.status_code,
                "error": detail.error,
                "kind": kind.value,
            },
        )
        if kind is not RemoteErrorKind.AUTH:
            raise self._failure(credential, remote_method, response, retried=False)

        credential = await self._refresh(tenant_id, credential.access_token, reactive=True)
        retry = await self._send(credential, remote_method, body)
        if is_success(retry):
            logger.info("Retry after token refresh succeeded", extra={"tenant_id": tenant_id, "remote_method": remote_method})
            return retry.json()

        logger.error(
            "Retry after token refresh failed",
            extra={"tenant_id": tenant_id, "remote_method": remote_method, "upstream_status": retry.status_code},
        )
        raise self._failure(credential, remote_method, retry, retried=True)
