# PUBLIC_INTERFACE
"""
Error taxonomy for the credential lifecycle and remote invocation core.

Every error carries a stable code, a human readable message, an HTTP status hint
for the API layer and a details map that is safe to log (never tokens).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFIG_REQUIRED = "CONFIG_REQUIRED"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    DOMAIN_UNRESOLVED = "DOMAIN_UNRESOLVED"
    PROVIDER_AUTH_FAILED = "PROVIDER_AUTH_FAILED"
    REFRESH_FAILED = "REFRESH_FAILED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    INTERNAL = "INTERNAL"


class ConnectorError(Exception):
    """Base class for all typed errors raised by the core."""

    code: str = ErrorCode.INTERNAL
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        """Render as the unified error envelope."""
        from .response import error_payload

        return error_payload(
            code=self.code,
            message=self.message,
            details=self.details or None,
            http_status=self.http_status,
        )


class ConfigurationError(ConnectorError):
    """Required OAuth configuration is missing."""

    code = ErrorCode.CONFIG_REQUIRED
    http_status = 500


class NotFoundError(ConnectorError):
    """No credential exists for the tenant; install must complete first."""

    code = ErrorCode.NOT_FOUND
    http_status = 404

    def __init__(self, tenant_id: str, message: Optional[str] = None):
        super().__init__(message or f"No credential stored for tenant '{tenant_id}'", details={"tenant_id": tenant_id})
        self.tenant_id = tenant_id


class InvalidCredentialError(ConnectorError):
    """The stored credential has no usable refresh token."""

    code = ErrorCode.INVALID_CREDENTIAL
    http_status = 409


class DomainResolutionError(ConnectorError):
    """Install could not determine the provider domain from any source."""

    code = ErrorCode.DOMAIN_UNRESOLVED
    http_status = 422


class ValidationFailedError(ConnectorError):
    """Caller input is missing or malformed."""

    code = ErrorCode.VALIDATION
    http_status = 400


class InstallPayloadError(ValidationFailedError):
    """An install callback is missing the fields needed for either flow."""


class ProviderAuthError(ConnectorError):
    """The provider's token endpoint rejected an exchange."""

    code = ErrorCode.PROVIDER_AUTH_FAILED
    http_status = 401

    def __init__(
        self,
        message: str,
        *,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message,
            details={"error": error, "error_description": error_description, "upstream_status": status_code},
        )
        self.error = error
        self.error_description = error_description
        self.status_code = status_code


class RefreshFailedError(ConnectorError):
    """A proactive or reactive refresh failed; the remote call was not (re)attempted."""

    code = ErrorCode.REFRESH_FAILED
    http_status = 502

    def __init__(self, tenant_id: str, cause: ConnectorError):
        super().__init__(
            f"Token refresh failed for tenant '{tenant_id}': {cause.message}",
            details={"tenant_id": tenant_id, "cause": cause.code, **cause.details},
        )
        self.tenant_id = tenant_id
        self.cause = cause
        self.retryable = cause.retryable


class RemoteCallFailedError(ConnectorError):
    """A remote method failed for a non-auth reason or after the single refresh-retry."""

    code = ErrorCode.UPSTREAM_ERROR
    http_status = 502

    def __init__(
        self,
        remote_method: str,
        *,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
        retried: bool = False,
    ):
        reason = error_description or error or "unknown error"
        super().__init__(
            f"Remote call '{remote_method}' failed: {reason}",
            details={
                "remote_method": remote_method,
                "error": error,
                "error_description": error_description,
                "upstream_status": status_code,
                "retried": retried,
            },
        )
        self.remote_method = remote_method
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        self.retried = retried


class TransportError(ConnectorError):
    """Timeout or network failure; retryable by the caller under its own policy."""

    code = ErrorCode.TRANSPORT_ERROR
    http_status = 504
    retryable = True

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, details={"url": url, "upstream_status": status_code})
        self.url = url
        self.status_code = status_code
