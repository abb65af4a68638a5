from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse


# PUBLIC_INTERFACE
def normalize_domain(value: Optional[str]) -> Optional[str]:
    """Reduce a domain or URL to a bare lowercase hostname ("acme.bitrix24.com")."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if "://" not in text:
        text = f"https://{text}"
    try:
        host = urlparse(text).hostname
    except ValueError:
        return None
    return host.lower() if host else None


# PUBLIC_INTERFACE
def domain_from_endpoint(client_endpoint: Optional[str]) -> Optional[str]:
    """Hostname of a client endpoint URL such as ``https://acme.bitrix24.com/rest/``.

    Only absolute http(s) URLs count; anything else yields None.
    """
    if not client_endpoint:
        return None
    try:
        parsed = urlparse(client_endpoint.strip())
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return parsed.hostname.lower()
