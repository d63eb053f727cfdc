from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.apps.api.deps import Principal, get_db, require_roles
from caseregistry.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from caseregistry.apps.api.response import success_response
from caseregistry.core.config import get_settings
from caseregistry.domain.models import AuditLog
from caseregistry.persistence.repos import audit as audit_repo
from caseregistry.services.auth.api_keys import SUPER_ADMIN, SYSTEM_ADMIN


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditLogResponse(BaseModel):
    id: str
    user_id: str | None
    action: str
    description: str
    details: dict[str, Any] | None
    timestamp: str


def _to_response(row: AuditLog) -> dict[str, Any]:
    # Serialize audit datetimes to ISO 8601 for API clients.
    return AuditLogResponse(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        description=row.description,
        details=row.details,
        timestamp=row.timestamp.isoformat(),
    ).model_dump()


@router.get("/logs")
async def list_audit_logs(
    request: Request,
    user_id: str | None = None,
    action: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_roles(SUPER_ADMIN, SYSTEM_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = get_settings()
    resolved_limit = min(limit or settings.audit_default_page_size, settings.audit_max_page_size)
    try:
        rows = await audit_repo.list_logs(
            db,
            user_id=user_id,
            action=action,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=resolved_limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit logs") from exc

    next_offset = None
    if len(rows) > resolved_limit:
        rows = rows[:resolved_limit]
        next_offset = offset + resolved_limit
    payload = {"items": [_to_response(row) for row in rows], "next_offset": next_offset}
    return success_response(request=request, data=payload)


@router.get("/logs/{log_id}")
async def get_audit_log(
    log_id: str,
    request: Request,
    principal: Principal = Depends(require_roles(SUPER_ADMIN, SYSTEM_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        row = await audit_repo.get_log_by_id(db, log_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit log") from exc
    if row is None:
        raise HTTPException(status_code=404, detail="Audit log not found")
    return success_response(request=request, data=_to_response(row))
