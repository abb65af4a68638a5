"""Token staleness policy. Pure functions, no clocks read implicitly except `utcnow`."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .models import Credential

DEFAULT_SAFETY_MARGIN_SECONDS = 300


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def is_stale(credential: Credential, now: datetime, safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS) -> bool:
    """Return True when the access token must be refreshed before use.

    A token is stale once more than ``expires_in_seconds - safety_margin_seconds``
    seconds have passed since it was issued. Exactly at the bound it is still fresh.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    age = (now - credential.issued_at).total_seconds()
    return age > credential.expires_in_seconds - safety_margin_seconds


# PUBLIC_INTERFACE
def refresh_due_at(credential: Credential, safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS) -> datetime:
    """Absolute time after which `is_stale` turns true."""
    return credential.issued_at + timedelta(seconds=credential.expires_in_seconds - safety_margin_seconds)
