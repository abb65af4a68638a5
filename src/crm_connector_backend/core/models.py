from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes that are UTC by convention
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Credential(BaseModel):
    """Per-tenant OAuth credential for one provider portal."""

    tenant_id: str = Field(..., min_length=1, description="Stable tenant identifier (provider member_id)")
    provider_domain: str = Field(..., min_length=1, description="Hostname of the tenant's portal, e.g. acme.bitrix24.com")
    access_token: str = Field(..., description="Short-lived bearer token")
    refresh_token: Optional[str] = Field(default=None, description="Long-lived rotating refresh token")
    expires_in_seconds: int = Field(..., ge=0, description="TTL advertised by the provider at issuance")
    issued_at: datetime = Field(default_factory=_now_utc, description="Time of the most recent issuance or refresh")
    created_at: datetime = Field(default_factory=_now_utc, description="Time the credential was first stored")

    @field_validator("issued_at", "created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def __repr__(self) -> str:  # tokens stay out of reprs and tracebacks
        return (
            f"Credential(tenant_id={self.tenant_id!r}, provider_domain={self.provider_domain!r}, "
            f"expires_in_seconds={self.expires_in_seconds}, issued_at={self.issued_at.isoformat()})"
        )

    __str__ = __repr__


class TokenPair(BaseModel):
    """Normalized result of a token endpoint exchange."""

    access_token: str = Field(..., description="Newly issued access token")
    refresh_token: Optional[str] = Field(default=None, description="Newly issued refresh token")
    expires_in_seconds: int = Field(..., ge=0, description="TTL of the access token")
    tenant_id: str = Field(..., description="Tenant the pair belongs to (member_id)")

    def __repr__(self) -> str:
        return f"TokenPair(tenant_id={self.tenant_id!r}, expires_in_seconds={self.expires_in_seconds})"

    __str__ = __repr__

    # PUBLIC_INTERFACE
    @classmethod
    def from_credential(cls, credential: Credential) -> "TokenPair":
        """Build the pair view of a stored credential."""
        return cls(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_in_seconds=credential.expires_in_seconds,
            tenant_id=credential.tenant_id,
        )
