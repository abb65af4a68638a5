from __future__ import annotations

import httpx
import pytest

from crm_connector_backend.connectors.bitrix.token_authority import TokenAuthority
from crm_connector_backend.core.errors import (
    ConfigurationError,
    InstallPayloadError,
    InvalidCredentialError,
    NotFoundError,
    ProviderAuthError,
    TransportError,
)
from crm_connector_backend.core.observability import metrics_snapshot

from conftest import DOMAIN, NOW, seed, token_reply


@pytest.fixture
def authority(bitrix_settings, store, fake):
    return TokenAuthority(bitrix_settings, store, httpx.AsyncClient(transport=fake.transport))


@pytest.mark.asyncio
async def test_code_exchange_stores_credential_for_member(authority, store, fake):
    fake.token_replies = [token_reply(access_token="a1", refresh_token="r1", member_id="M42")]

    pair = await authority.exchange_authorization_code("the-code", "https://ACME.bitrix24.com/")

    assert pair.tenant_id == "M42"
    request = fake.token_requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"https://{DOMAIN}/oauth/token/"
    form = fake.form(request)
    assert form == {
        "grant_type": "authorization_code",
        "client_id": "app.client",
        "client_secret": "app-secret",
        "code": "the-code",
        "redirect_uri": "https://connector.example.com/bitrix/install",
        "scope": "crm,user,entity",
    }
    stored = await store.get("M42")
    assert stored.access_token == "a1"
    assert stored.refresh_token == "r1"
    assert stored.provider_domain == DOMAIN


@pytest.mark.asyncio
async def test_code_exchange_requires_configuration(bitrix_settings, store, fake):
    settings = bitrix_settings.model_copy(update={"CLIENT_SECRET": None, "REDIRECT_URI": ""})
    authority = TokenAuthority(settings, store, httpx.AsyncClient(transport=fake.transport))

    with pytest.raises(ConfigurationError) as exc:
        await authority.exchange_authorization_code("code", DOMAIN)
    assert exc.value.details["missing"] == ["CLIENT_SECRET", "REDIRECT_URI"]
    assert fake.token_requests == []


@pytest.mark.asyncio
async def test_code_exchange_requires_domain(authority, fake):
    with pytest.raises(InstallPayloadError):
        await authority.exchange_authorization_code("code", "  ")
    assert fake.token_requests == []


@pytest.mark.asyncio
async def test_code_exchange_rejected(authority, store, fake):
    fake.token_replies = [httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code expired"})]

    with pytest.raises(ProviderAuthError) as exc:
        await authority.exchange_authorization_code("stale-code", DOMAIN)
    assert exc.value.error == "invalid_grant"
    assert len(store) == 0


@pytest.mark.asyncio
async def test_token_response_without_access_token_is_rejected(authority, store, fake):
    fake.token_replies = [httpx.Response(200, json={"member_id": "M1"})]
    with pytest.raises(ProviderAuthError):
        await authority.exchange_authorization_code("code", DOMAIN)
    assert len(store) == 0


@pytest.mark.asyncio
async def test_refresh_rotates_and_persists(authority, store, fake):
    await seed(store)
    fake.token_replies = [token_reply(access_token="a2", refresh_token="r2")]

    pair = await authority.exchange_refresh_token("T1", now=NOW)

    assert (pair.access_token, pair.refresh_token) == ("a2", "r2")
    form = fake.form(fake.token_requests[0])
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "old-refresh"
    assert "redirect_uri" not in form
    stored = await store.get("T1")
    assert (stored.access_token, stored.refresh_token) == ("a2", "r2")
    assert stored.issued_at == NOW
    assert metrics_snapshot()["token_refresh_total"] == 1


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_none_returned(authority, store, fake):
    await seed(store)
    fake.token_replies = [token_reply(access_token="a2", refresh_token=None)]

    await authority.exchange_refresh_token("T1")

    assert (await store.get("T1")).refresh_token == "old-refresh"


@pytest.mark.asyncio
async def test_refresh_rejection_leaves_credential_untouched(authority, store, fake):
    before = await seed(store)
    fake.token_replies = [httpx.Response(401, json={"error": "invalid_grant", "error_description": "Refresh token revoked"})]

    with pytest.raises(ProviderAuthError):
        await authority.exchange_refresh_token("T1")

    after = await store.get("T1")
    assert after == before
    assert metrics_snapshot()["token_refresh_failures_total"] == 1


@pytest.mark.asyncio
async def test_refresh_transport_failure(authority, store, fake):
    await seed(store)
    fake.token_replies = [httpx.ConnectTimeout("timed out")]

    with pytest.raises(TransportError) as exc:
        await authority.exchange_refresh_token("T1")
    assert exc.value.retryable
    assert (await store.get("T1")).access_token == "old-access"


@pytest.mark.asyncio
async def test_refresh_skipped_when_token_already_rotated(authority, store, fake):
    await seed(store, access_token="current")

    pair = await authority.exchange_refresh_token("T1", superseded_access_token="previous")

    assert pair.access_token == "current"
    assert fake.token_requests == []
    assert metrics_snapshot()["token_refresh_skipped_total"] == 1


@pytest.mark.asyncio
async def test_refresh_without_refresh_token(authority, store, fake):
    await seed(store, refresh_token=None)
    with pytest.raises(InvalidCredentialError):
        await authority.exchange_refresh_token("T1")
    assert fake.token_requests == []


@pytest.mark.asyncio
async def test_refresh_unknown_tenant(authority):
    with pytest.raises(NotFoundError):
        await authority.exchange_refresh_token("ghost")


@pytest.mark.asyncio
async def test_refresh_requires_client_credentials(bitrix_settings, store, fake):
    await seed(store)
    authority = TokenAuthority(bitrix_settings.model_copy(update={"CLIENT_ID": None}), store, httpx.AsyncClient(transport=fake.transport))
    with pytest.raises(ConfigurationError):
        await authority.exchange_refresh_token("T1")
    assert fake.token_requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_in", [-1, "soon"])
async def test_malformed_expiry_is_rejected_without_persisting(authority, store, fake, expires_in):
    fake.token_replies = [
        httpx.Response(200, json={"access_token": "a1", "refresh_token": "r1", "member_id": "M1", "expires_in": expires_in})
    ]

    with pytest.raises(ProviderAuthError) as exc:
        await authority.exchange_authorization_code("code", DOMAIN)

    assert exc.value.error == "malformed_token_response"
    assert len(store) == 0


@pytest.mark.asyncio
async def test_missing_expiry_defaults_to_one_hour(authority, store, fake):
    fake.token_replies = [httpx.Response(200, json={"access_token": "a1", "refresh_token": "r1", "member_id": "M1"})]

    pair = await authority.exchange_authorization_code("code", DOMAIN)

    assert pair.expires_in_seconds == 3600
    assert (await store.get("M1")).expires_in_seconds == 3600
