from __future__ import annotations

import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from ...core.api_models import ErrorResponse, InstallResult, InstallSuccess, RemoteResultSuccess
from ...core.errors import ConfigurationError, InstallPayloadError, NotFoundError, ValidationFailedError
from ...core.logging import get_logger
from ...core.response import ok
from ...core.tenants import get_member_id
from .connector import BitrixConnector

logger = get_logger(__name__)

_METHOD_RE = re.compile(r"^[A-Za-z0-9_]+(\.[A-Za-z0-9_]+)*$")

_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Bad Request"},
    404: {"model": ErrorResponse, "description": "Tenant not installed"},
    422: {"model": ErrorResponse, "description": "Provider domain could not be resolved"},
    502: {"model": ErrorResponse, "description": "Upstream error or refresh failure"},
    504: {"model": ErrorResponse, "description": "Upstream timeout"},
}


# PUBLIC_INTERFACE
def get_connector(request: Request) -> BitrixConnector:
    """FastAPI dependency returning the connector built at application startup."""
    connector = getattr(request.app.state, "bitrix", None)
    if connector is None:
        raise ConfigurationError("Bitrix24 connector is not initialized")
    return connector


# PUBLIC_INTERFACE
async def require_installed_tenant(
    member_id: str = Depends(get_member_id),
    connector: BitrixConnector = Depends(get_connector),
) -> str:
    """Guard for tenant-scoped routes: ``memberId`` must name an installed tenant."""
    if await connector.store.find(member_id) is None:
        logger.warning("No token found for memberId", extra={"tenant_id": member_id})
        raise NotFoundError(member_id, f"Bitrix token not found for memberId: {member_id}")
    return member_id


async def _read_install_body(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            raise InstallPayloadError("Install body is not valid JSON")
        if not isinstance(body, dict):
            raise InstallPayloadError("Install body must be a JSON object")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def get_router() -> APIRouter:
    """Bitrix24 endpoints: install callbacks and the REST passthrough."""
    router = APIRouter()

    @router.get(
        "/bitrix/install",
        summary="Install callback (GET)",
        description="Handles the authorization-code redirect, or an ONAPPINSTALL event that carries tokens in the query.",
        tags=["Bitrix24"],
        response_model=InstallSuccess,
        responses={
            200: {
                "description": "Credential stored",
                "content": {
                    "application/json": {
                        "example": {
                            "status": "ok",
                            "data": {
                                "message": "App installed successfully!",
                                "tenant_id": "a1b2c3",
                                "provider_domain": "acme.bitrix24.com",
                                "expires_in_seconds": 3600,
                                "issued_at": "2024-01-01T00:00:00Z",
                            },
                            "meta": {},
                        }
                    }
                },
            },
            **_ERROR_RESPONSES,
        },
    )
    async def install_get(
        code: Optional[str] = Query(default=None, description="Authorization code from the OAuth redirect"),
        domain: Optional[str] = Query(default=None, description="Portal domain"),
        event: Optional[str] = Query(default=None, description="Event name, ONAPPINSTALL for push installs"),
        auth_id: Optional[str] = Query(default=None, description="Access token pushed by the portal"),
        refresh_id: Optional[str] = Query(default=None, description="Refresh token pushed by the portal"),
        member_id: Optional[str] = Query(default=None, description="Portal member_id"),
        expires_in: Optional[str] = Query(default=None, description="Access token lifetime in seconds"),
        connector: BitrixConnector = Depends(get_connector),
    ):
        logger.info("Install GET event received", extra={"event": event, "provider_domain": domain})
        credential = await connector.installer.handle_install_event(
            {
                "code": code,
                "domain": domain,
                "event": event,
                "auth_id": auth_id,
                "refresh_id": refresh_id,
                "member_id": member_id,
                "expires_in": expires_in,
            }
        )
        return ok(InstallResult.from_credential(credential).model_dump(mode="json"))

    @router.post(
        "/bitrix/install",
        summary="Install event (POST)",
        description=(
            "Stores the tokens the portal pushes on installation. Accepts form or JSON bodies with "
            "AUTH_ID, REFRESH_ID, AUTH_EXPIRES, member_id and optionally DOMAIN and client_endpoint."
        ),
        tags=["Bitrix24"],
        response_model=InstallSuccess,
        responses=_ERROR_RESPONSES,
    )
    async def install_post(request: Request, connector: BitrixConnector = Depends(get_connector)):
        body = await _read_install_body(request)
        member_id = body.get("member_id") or ""
        logger.info("Install POST event received", extra={"tenant_id": member_id or "-"})
        credential = await connector.install_via_push(
            member_id,
            body.get("AUTH_ID") or "",
            body.get("REFRESH_ID") or "",
            body.get("AUTH_EXPIRES"),
            provider_domain_hint=body.get("DOMAIN") or request.query_params.get("DOMAIN"),
            client_endpoint=body.get("client_endpoint"),
        )
        return ok(InstallResult.from_credential(credential, "App installed successfully! (POST)").model_dump(mode="json"))

    @router.post(
        "/bitrix/rest/{method}",
        summary="Call a Bitrix24 REST method",
        description="Invokes the named REST method for the tenant with automatic token refresh and a single retry on auth failure.",
        tags=["Bitrix24"],
        response_model=RemoteResultSuccess,
        responses={
            200: {
                "description": "Provider result, unchanged",
                "content": {
                    "application/json": {
                        "example": {
                            "status": "ok",
                            "data": {"result": {"ID": "42", "NAME": "Jane"}, "time": {"duration": 0.02}},
                            "meta": {"method": "crm.contact.get"},
                        }
                    }
                },
            },
            **_ERROR_RESPONSES,
        },
    )
    async def call_method(
        method: str,
        payload: Optional[Dict[str, Any]] = Body(default=None),
        member_id: str = Depends(require_installed_tenant),
        connector: BitrixConnector = Depends(get_connector),
    ):
        if not _METHOD_RE.match(method):
            raise ValidationFailedError("Invalid REST method name", details={"method": method})
        result = await connector.invoke(member_id, method, payload)
        return ok(result, meta={"method": method})

    return router
