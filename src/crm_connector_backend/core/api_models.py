from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from .models import Credential

T = TypeVar("T")


class ErrorResponse(BaseModel):
    """Standardized error payload for all endpoints."""
    status: str = Field("error", description="Error status, always 'error'")
    code: str = Field(..., description="Machine-readable error code (e.g., NOT_FOUND, REFRESH_FAILED, UPSTREAM_ERROR)")
    message: str = Field(..., description="Human-readable description of the error")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional structured, safe-to-log error details")
    http_status: Optional[int] = Field(default=None, description="HTTP status decided locally or observed upstream")


class SuccessResponse(BaseModel, Generic[T]):
    """Standardized success payload wrapper."""
    status: str = Field("ok", description="Success status, always 'ok'")
    data: T = Field(..., description="Response data")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata associated with the response")


class InstallResult(BaseModel):
    """Public view of a freshly stored credential. Tokens are never echoed back."""
    message: str = Field(..., description="Informational message")
    tenant_id: str = Field(..., description="Provider member_id the credential is stored under")
    provider_domain: str = Field(..., description="Portal hostname API calls are sent to")
    expires_in_seconds: int = Field(..., description="Access token lifetime granted by the provider")
    issued_at: datetime = Field(..., description="When the stored access token was issued (UTC)")

    # PUBLIC_INTERFACE
    @classmethod
    def from_credential(cls, credential: Credential, message: str = "App installed successfully!") -> "InstallResult":
        return cls(
            message=message,
            tenant_id=credential.tenant_id,
            provider_domain=credential.provider_domain,
            expires_in_seconds=credential.expires_in_seconds,
            issued_at=credential.issued_at,
        )


class HealthData(BaseModel):
    message: str = Field(..., description="Health status message")
    env: str = Field(..., description="Environment name")


class InstallSuccess(SuccessResponse[InstallResult]):  # type: ignore[type-arg]
    pass


class RemoteResultSuccess(SuccessResponse[Dict[str, Any]]):  # type: ignore[type-arg]
    pass
