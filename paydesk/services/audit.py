from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from paydesk.db.models import AuditLog
from paydesk.utils.correlation import get_correlation_id
from paydesk.utils.time import db_now


async def log_audit(
    session: AsyncSession,
    *,
    actor: str,
    action: str,
    target_type: str,
    target_id: Optional[Any] = None,
    meta: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """Write an audit row in the caller's transaction."""
    payload = dict(meta or {})
    cid = get_correlation_id()
    if cid:
        payload.setdefault("correlation_id", cid)
    entry = AuditLog(
        actor=str(actor),
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        meta=payload or None,
        created_at=db_now(),
    )
    session.add(entry)
    await session.flush()
    return entry
