from __future__ import annotations

from typing import Any, Dict, List, Optional


# PUBLIC_INTERFACE
def ok(data: Dict[str, Any] | List[Any] | Any, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Produce a standardized success payload.
    Use "status": "ok" and include a top-level "data" wrapper to align with a unified interface.
    """
    return {
        "status": "ok",
        "data": data,
        "meta": meta or {},
    }


# PUBLIC_INTERFACE
def error_payload(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    http_status: Optional[int] = None,
) -> Dict[str, Any]:
    """Produce a standardized error payload.

    - status: always "error"
    - code: machine-readable error code (e.g., NOT_FOUND, REFRESH_FAILED, UPSTREAM_ERROR)
    - message: human-readable message
    - details: optional structured extra info (safe; must not include secrets)
    - http_status: optional http status decided locally or observed upstream
    """
    payload: Dict[str, Any] = {
        "status": "error",
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = details
    if http_status is not None:
        payload["http_status"] = http_status
    return payload


# PUBLIC_INTERFACE
def validation_error(message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return standardized validation error payload."""
    return error_payload(code="VALIDATION_ERROR", message=message, details=details or {}, http_status=400)
