"""Best-effort admin audit log."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import utcnow
from questline.db.models import AdminAuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditOutcome:
    ok: bool
    error: str | None = None


async def _write_audit_row(db: AsyncSession, row: AdminAuditLog) -> None:
    db.add(row)
    await db.flush()


async def record_admin_action(
    db: AsyncSession,
    admin_user_id: int,
    action: str,
    target_type: str,
    target_id: str | int,
    details: dict | None = None,
    now: datetime | None = None,
) -> AuditOutcome:
    """Write an audit row inside a savepoint.

    A failed write is logged and reported in the outcome; it never aborts
    the surrounding transaction.
    """
    row = AdminAuditLog(
        admin_user_id=admin_user_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id),
        details=details or {},
        created_at=now or utcnow(),
    )
    try:
        async with db.begin_nested():
            await _write_audit_row(db, row)
    except SQLAlchemyError as exc:
        logger.warning(
            "Audit write failed: action=%s target=%s:%s",
            action,
            target_type,
            target_id,
            exc_info=True,
        )
        return AuditOutcome(ok=False, error=str(exc))
    return AuditOutcome(ok=True)


async def list_audit_rows(
    db: AsyncSession,
    target_type: str | None = None,
    target_id: str | int | None = None,
) -> list[AdminAuditLog]:
    stmt = select(AdminAuditLog).order_by(AdminAuditLog.created_at.asc(), AdminAuditLog.id.asc())
    if target_type is not None:
        stmt = stmt.where(AdminAuditLog.target_type == target_type)
    if target_id is not None:
        stmt = stmt.where(AdminAuditLog.target_id == str(target_id))
    result = await db.execute(stmt)
    return list(result.scalars().all())
