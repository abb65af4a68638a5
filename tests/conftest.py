from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import parse_qs

import httpx
import pytest

from crm_connector_backend.connectors.bitrix.connector import BitrixConnector
from crm_connector_backend.core.credential_store import InMemoryCredentialStore
from crm_connector_backend.core.observability import reset_metrics
from crm_connector_backend.core.settings import BitrixSettings, Settings

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
DOMAIN = "acme.bitrix24.com"

Reply = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeBitrix:
    """Stands in for a Bitrix24 portal behind httpx.MockTransport.

    Queued replies are consumed in order; the last one repeats once the queue is drained.
    """

    def __init__(self, token_delay: float = 0.0):
        self.token_replies: List[Reply] = []
        self.rest_replies: List[Reply] = []
        self.token_requests: List[httpx.Request] = []
        self.rest_requests: List[httpx.Request] = []
        self.token_delay = token_delay

    @staticmethod
    def _next(queue: List[Reply], request: httpx.Request) -> httpx.Response:
        if not queue:
            raise AssertionError(f"unexpected request to {request.url}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token/":
            self.token_requests.append(request)
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            return self._next(self.token_replies, request)
        if request.url.path.startswith("/rest/"):
            self.rest_requests.append(request)
            return self._next(self.rest_replies, request)
        return httpx.Response(404, json={"error": "NOT_FOUND"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    # helpers for assertions
    @staticmethod
    def form(request: httpx.Request) -> Dict[str, str]:
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}

    @staticmethod
    def auth_param(request: httpx.Request) -> Optional[str]:
        return request.url.params.get("auth")

    @staticmethod
    def json_body(request: httpx.Request) -> Any:
        return json.loads(request.content or b"null")


def token_reply(
    access_token: str = "new-access",
    refresh_token: Optional[str] = "new-refresh",
    member_id: str = "T1",
    expires_in: int = 3600,
) -> httpx.Response:
    body: Dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "member_id": member_id,
        "domain": "oauth.bitrix.info",
        "scope": "crm,user,entity",
    }
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


def expired_token_reply() -> httpx.Response:
    return httpx.Response(
        401,
        json={"error": "expired_token", "error_description": "The access token provided has expired."},
    )


def result_reply(result: Any = None) -> httpx.Response:
    return httpx.Response(200, json={"result": result if result is not None else {"ID": "42"}, "time": {"duration": 0.01}})


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def bitrix_settings() -> BitrixSettings:
    return BitrixSettings(
        CLIENT_ID="app.client",
        CLIENT_SECRET="app-secret",
        REDIRECT_URI="https://connector.example.com/bitrix/install",
        DEFAULT_DOMAIN=None,
        REQUEST_TIMEOUT_SECONDS=5,
        REFRESH_SAFETY_MARGIN_SECONDS=300,
    )


@pytest.fixture
def settings(bitrix_settings: BitrixSettings) -> Settings:
    return Settings(bitrix=bitrix_settings)


@pytest.fixture
def fake() -> FakeBitrix:
    return FakeBitrix()


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def connector(settings: Settings, store: InMemoryCredentialStore, fake: FakeBitrix) -> BitrixConnector:
    return BitrixConnector.from_settings(settings, store=store, transport=fake.transport, clock=lambda: NOW)


async def seed(
    store: InMemoryCredentialStore,
    tenant_id: str = "T1",
    *,
    access_token: str = "old-access",
    refresh_token: Optional[str] = "old-refresh",
    expires_in_seconds: int = 3600,
    issued_at: datetime = NOW,
    provider_domain: str = DOMAIN,
):
    return await store.upsert(
        tenant_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in_seconds=expires_in_seconds,
        provider_domain=provider_domain,
        now=issued_at,
    )
