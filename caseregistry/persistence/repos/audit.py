from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import AuditLog


async def list_logs(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    action: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if occurred_from:
        stmt = stmt.where(AuditLog.timestamp >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLog.timestamp <= occurred_to)

    stmt = stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_log_by_id(session: AsyncSession, log_id: str) -> AuditLog | None:
    result = await session.execute(select(AuditLog).where(AuditLog.id == log_id))
    return result.scalar_one_or_none()
