"""
shared/utils/audit.py
Admin audit trail. Every admin mutation appends one row in the same unit of work.
"""

from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminAuditLog, User


def log_admin_action(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    payload: Optional[dict] = None,
    request: Optional[Request] = None,
) -> AdminAuditLog:
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)
    return log
