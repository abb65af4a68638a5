from __future__ import annotations

from typing import Optional

from fastapi import Query

from .errors import ValidationFailedError
from .logging import get_logger
from .observability import bind_tenant

logger = get_logger(__name__)


# PUBLIC_INTERFACE
def get_member_id(member_id: Optional[str] = Query(default=None, alias="memberId", description="Bitrix24 member_id of the tenant")) -> str:
    """Resolve the tenant id from the ``memberId`` query parameter; it is mandatory."""
    if not member_id or not member_id.strip():
        logger.warning("memberId is missing in query")
        raise ValidationFailedError("memberId is required in query.", details={"param": "memberId"})
    member_id = member_id.strip()
    bind_tenant(member_id)
    return member_id
