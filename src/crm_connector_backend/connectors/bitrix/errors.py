"""
Classification of Bitrix24 REST outcomes.

Bitrix24 reports failures as ``{"error": ..., "error_description": ...}``, usually
with an HTTP 4xx/5xx status but occasionally inside a 200 response. The only
outcome that justifies a reactive token refresh is an authentication signal.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

AUTH_ERROR_CODES = frozenset({"expired_token", "invalid_token"})
AUTH_DESCRIPTION_MARKERS = ("access token has expired", "invalid token")
TRANSPORT_STATUS_CODES = frozenset({502, 503, 504})


class RemoteErrorKind(str, enum.Enum):
    AUTH = "auth"
    TRANSPORT = "transport"
    OTHER = "other"


@dataclass(frozen=True)
class RemoteErrorDetail:
    error: Optional[str]
    error_description: Optional[str]
    status_code: Optional[int]


def _json_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# PUBLIC_INTERFACE
def error_detail(response: httpx.Response) -> RemoteErrorDetail:
    """Extract the provider's error code and description from a failed response."""
    body = _json_body(response) or {}
    error = body.get("error")
    description = body.get("error_description")
    if error is None and description is None and response.status_code >= 400:
        description = (response.text or "")[:500] or None
    return RemoteErrorDetail(
        error=str(error) if error is not None else None,
        error_description=str(description) if description is not None else None,
        status_code=response.status_code,
    )


# PUBLIC_INTERFACE
def is_success(response: httpx.Response) -> bool:
    """True for a success envelope: HTTP < 400 and a JSON object without an `error` field."""
    if response.status_code >= 400:
        return False
    body = _json_body(response)
    return body is not None and "error" not in body


# PUBLIC_INTERFACE
def classify_remote_error(outcome: Union[httpx.Response, BaseException]) -> RemoteErrorKind:
    """Classify a failed remote outcome as AUTH, TRANSPORT or OTHER.

    ``outcome`` is either the failed response or the exception raised while sending.
    """
    if isinstance(outcome, BaseException):
        if isinstance(outcome, (httpx.TimeoutException, httpx.TransportError)):
            return RemoteErrorKind.TRANSPORT
        return RemoteErrorKind.OTHER

    detail = error_detail(outcome)
    if outcome.status_code == 401:
        return RemoteErrorKind.AUTH
    if detail.error and detail.error.lower() in AUTH_ERROR_CODES:
        return RemoteErrorKind.AUTH
    description = (detail.error_description or "").lower()
    if any(marker in description for marker in AUTH_DESCRIPTION_MARKERS):
        return RemoteErrorKind.AUTH
    if outcome.status_code in TRANSPORT_STATUS_CODES:
        return RemoteErrorKind.TRANSPORT
    return RemoteErrorKind.OTHER
