from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.apps.api.deps import Principal, get_db, require_roles
from caseregistry.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from caseregistry.apps.api.response import page_info, success_response
from caseregistry.core.config import get_settings
from caseregistry.core.errors import (
    BeneficiaryNotFoundError,
    CryptoConfigError,
    EncryptionError,
    PseudonymAllocationError,
)
from caseregistry.domain.models import Beneficiary, ServiceDelivery
from caseregistry.persistence.repos import assignments as assignments_repo
from caseregistry.persistence.repos import beneficiaries as beneficiaries_repo
from caseregistry.persistence.repos import service_deliveries as deliveries_repo
from caseregistry.services import audit
from caseregistry.services.auth.api_keys import (
    PROGRAM_MANAGER,
    SUB_PROJECT_MANAGER,
    SUPER_ADMIN,
    SYSTEM_ADMIN,
)
from caseregistry.services.beneficiaries import disclosure, records


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/beneficiaries", tags=["beneficiaries"], responses=DEFAULT_ERROR_RESPONSES)

READ_ROLES = (SUPER_ADMIN, SYSTEM_ADMIN, PROGRAM_MANAGER, SUB_PROJECT_MANAGER)
WRITE_ROLES = (SUPER_ADMIN, SYSTEM_ADMIN, PROGRAM_MANAGER)
PII_ROLES = (SUPER_ADMIN, SYSTEM_ADMIN)


class BeneficiaryFields(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    dob: str | None = None
    national_id: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    gender: str | None = None
    municipality: str | None = None
    nationality: str | None = None
    ethnicity: str | None = None
    residence: str | None = None
    household_members: int | None = None


class BeneficiaryCreateRequest(BeneficiaryFields):
    status: Literal["active", "inactive"] = "active"


class BeneficiaryUpdateRequest(BeneficiaryFields):
    status: Literal["active", "inactive"] | None = None


class BeneficiaryStatusRequest(BaseModel):
    status: Literal["active", "inactive"]


class EntityLinkRequest(BaseModel):
    entity_id: str
    entity_type: Literal["project", "subproject"]


class BeneficiarySafeResponse(BaseModel):
    id: str
    pseudonym: str
    status: str
    created_at: datetime | None
    updated_at: datetime | None


class EntityLinkResponse(BaseModel):
    entity_id: str
    entity_type: str
    created_at: datetime | None


class ServiceDeliveryResponse(BaseModel):
    id: str
    service_id: str
    entity_id: str
    entity_type: str
    form_response_id: str | None
    staff_user_id: str | None
    delivered_at: datetime
    notes: str | None
    created_at: datetime | None


def _to_safe_response(beneficiary: Beneficiary) -> dict[str, Any]:
    return BeneficiarySafeResponse(**disclosure.safe_fields(beneficiary)).model_dump()


def _page_bounds(page: int, limit: int | None) -> tuple[int, int]:
    # Clamp to the configured bounds rather than rejecting oversized pages.
    settings = get_settings()
    resolved = min(limit or settings.beneficiary_default_page_size, settings.beneficiary_max_page_size)
    return (page - 1) * resolved, resolved


def _route_label(request: Request) -> str:
    return f"{request.method} {request.url.path}"


async def _load_or_404(db: AsyncSession, beneficiary_id: str) -> Beneficiary:
    try:
        beneficiary = await beneficiaries_repo.get_beneficiary(db, beneficiary_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching beneficiary") from exc
    if beneficiary is None:
        raise HTTPException(status_code=404, detail="Beneficiary not found")
    return beneficiary


async def _commit_or_500(db: AsyncSession, message: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=message) from exc


@router.get("")
async def list_beneficiaries(
    request: Request,
    response: Response,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    status: Literal["active", "inactive"] | None = None,
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    offset, resolved_limit = _page_bounds(page, limit)
    try:
        rows, total = await beneficiaries_repo.list_beneficiaries(
            db, status=status, offset=offset, limit=resolved_limit
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing beneficiaries") from exc

    projections = await disclosure.disclose_many(
        rows,
        user_id=principal.subject_id,
        roles=principal.roles,
        route=_route_label(request),
        request=request,
        details={"page": page, "limit": resolved_limit, "status": status},
    )
    response.headers.update(disclosure.disclosure_headers(disclosure.is_privileged(principal.roles)))
    payload = {
        "items": [projection.to_payload() for projection in projections],
        **page_info(page=page, limit=resolved_limit, total_items=total).model_dump(),
    }
    return success_response(request=request, data=payload)


@router.get("/by-entity")
async def list_beneficiaries_by_entity(
    request: Request,
    response: Response,
    entity_id: str,
    entity_type: Literal["project", "subproject"],
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    offset, resolved_limit = _page_bounds(page, limit)
    try:
        rows, total = await beneficiaries_repo.list_for_entity(
            db, entity_id=entity_id, entity_type=entity_type, offset=offset, limit=resolved_limit
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing beneficiaries") from exc

    projections = await disclosure.disclose_many(
        rows,
        user_id=principal.subject_id,
        roles=principal.roles,
        route=_route_label(request),
        request=request,
        details={"entity_id": entity_id, "entity_type": entity_type, "page": page},
    )
    response.headers.update(disclosure.disclosure_headers(disclosure.is_privileged(principal.roles)))
    payload = {
        "items": [projection.to_payload() for projection in projections],
        **page_info(page=page, limit=resolved_limit, total_items=total).model_dump(),
    }
    return success_response(request=request, data=payload)


@router.get("/demographics")
async def beneficiary_demographics(
    request: Request,
    response: Response,
    principal: Principal = Depends(require_roles(*PII_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if not disclosure.is_privileged(principal.roles):
        raise HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "PII access denied"})
    try:
        rows = await beneficiaries_repo.list_demographic_ciphertexts(db)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while computing demographics") from exc
    summary = await disclosure.disclose_demographics(rows, user_id=principal.subject_id, request=request)
    response.headers.update(disclosure.disclosure_headers(True))
    return success_response(request=request, data=summary)


@router.get("/{beneficiary_id}")
async def get_beneficiary(
    beneficiary_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    beneficiary = await _load_or_404(db, beneficiary_id)
    projection = await disclosure.disclose_one(
        beneficiary,
        user_id=principal.subject_id,
        roles=principal.roles,
        route=_route_label(request),
        request=request,
    )
    response.headers.update(disclosure.disclosure_headers(projection.disclosed))
    return success_response(request=request, data=projection.to_payload())


@router.get("/{beneficiary_id}/pii")
async def get_beneficiary_pii(
    beneficiary_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_roles(*PII_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if not disclosure.is_privileged(principal.roles):
        raise HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "PII access denied"})
    beneficiary = await _load_or_404(db, beneficiary_id)
    pii = await disclosure.disclose_pii_only(
        beneficiary,
        user_id=principal.subject_id,
        route=_route_label(request),
        request=request,
    )
    response.headers.update(disclosure.disclosure_headers(True))
    return success_response(request=request, data={"id": beneficiary.id, "pii": pii})


@router.post("", status_code=201)
async def create_beneficiary(
    payload: BeneficiaryCreateRequest,
    request: Request,
    principal: Principal = Depends(require_roles(*WRITE_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    values = payload.model_dump(exclude_unset=True, exclude={"status"})
    try:
        beneficiary = await records.create_beneficiary(db, values=values, status=payload.status)
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=audit.BENEFICIARY_CREATE,
            description=f"Created beneficiary '{beneficiary.pseudonym}'",
            details={"beneficiary_id": beneficiary.id, "fields": sorted(values)},
            request=request,
        )
        await db.commit()
        await db.refresh(beneficiary)
    except (EncryptionError, CryptoConfigError, PseudonymAllocationError) as exc:
        await db.rollback()
        logger.error("beneficiary_create_failed reason=%s", type(exc).__name__)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating beneficiary") from exc
    return success_response(request=request, data=_to_safe_response(beneficiary))


@router.put("/{beneficiary_id}")
async def update_beneficiary(
    beneficiary_id: str,
    payload: BeneficiaryUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_roles(*WRITE_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    values = payload.model_dump(exclude_unset=True, exclude={"status"})
    try:
        beneficiary = await records.update_beneficiary(db, beneficiary_id, values=values, status=payload.status)
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=audit.BENEFICIARY_UPDATE,
            description=f"Updated beneficiary '{beneficiary.pseudonym}'",
            details={"beneficiary_id": beneficiary.id, "fields": sorted(values), "status": payload.status},
            request=request,
        )
        await db.commit()
        await db.refresh(beneficiary)
    except BeneficiaryNotFoundError as exc:
        await db.rollback()
        raise HTTPException(status_code=404, detail="Beneficiary not found") from exc
    except (EncryptionError, CryptoConfigError) as exc:
        await db.rollback()
        logger.error("beneficiary_update_failed beneficiary_id=%s reason=%s", beneficiary_id, type(exc).__name__)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating beneficiary") from exc
    return success_response(request=request, data=_to_safe_response(beneficiary))


async def _change_status(
    db: AsyncSession,
    *,
    beneficiary_id: str,
    status: str,
    action: str,
    principal: Principal,
    request: Request,
) -> Beneficiary:
    try:
        beneficiary = await records.set_status(db, beneficiary_id, status)
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=action,
            description=f"Set beneficiary '{beneficiary.pseudonym}' status to {status}",
            details={"beneficiary_id": beneficiary.id, "status": status},
            request=request,
        )
        await db.commit()
        await db.refresh(beneficiary)
    except BeneficiaryNotFoundError as exc:
        await db.rollback()
        raise HTTPException(status_code=404, detail="Beneficiary not found") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating beneficiary status") from exc
    return beneficiary


@router.patch("/{beneficiary_id}/status")
async def set_beneficiary_status(
    beneficiary_id: str,
    payload: BeneficiaryStatusRequest,
    request: Request,
    principal: Principal = Depends(require_roles(*WRITE_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    beneficiary = await _change_status(
        db,
        beneficiary_id=beneficiary_id,
        status=payload.status,
        action=audit.BENEFICIARY_STATUS_UPDATE,
        principal=principal,
        request=request,
    )
    return success_response(request=request, data=_to_safe_response(beneficiary))


@router.delete("/{beneficiary_id}")
async def delete_beneficiary(
    beneficiary_id: str,
    request: Request,
    principal: Principal = Depends(require_roles(*WRITE_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Soft delete: the row and its match keys stay so the identity is never re-created.
    beneficiary = await _change_status(
        db,
        beneficiary_id=beneficiary_id,
        status="inactive",
        action=audit.BENEFICIARY_DELETE,
        principal=principal,
        request=request,
    )
    return success_response(request=request, data=_to_safe_response(beneficiary))


def _to_delivery_response(delivery: ServiceDelivery) -> dict[str, Any]:
    return ServiceDeliveryResponse(
        id=delivery.id,
        service_id=delivery.service_id,
        entity_id=delivery.entity_id,
        entity_type=delivery.entity_type,
        form_response_id=delivery.form_response_id,
        staff_user_id=delivery.staff_user_id,
        delivered_at=delivery.delivered_at,
        notes=delivery.notes,
        created_at=delivery.created_at,
    ).model_dump()


async def _list_deliveries(
    db: AsyncSession,
    request: Request,
    beneficiary_id: str,
    *,
    page: int,
    limit: int | None,
    from_date: datetime | None,
    to_date: datetime | None,
    oldest_first: bool,
) -> dict[str, Any]:
    await _load_or_404(db, beneficiary_id)
    offset, resolved_limit = _page_bounds(page, limit)
    try:
        rows, total = await deliveries_repo.list_for_beneficiary(
            db,
            beneficiary_id,
            from_date=from_date,
            to_date=to_date,
            oldest_first=oldest_first,
            offset=offset,
            limit=resolved_limit,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing service deliveries") from exc
    payload = {
        "items": [_to_delivery_response(row) for row in rows],
        **page_info(page=page, limit=resolved_limit, total_items=total).model_dump(),
    }
    return success_response(request=request, data=payload)


@router.get("/{beneficiary_id}/services")
async def list_beneficiary_services(
    beneficiary_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Most recent delivery first.
    return await _list_deliveries(
        db,
        request,
        beneficiary_id,
        page=page,
        limit=limit,
        from_date=from_date,
        to_date=to_date,
        oldest_first=False,
    )


@router.get("/{beneficiary_id}/services/history")
async def beneficiary_service_history(
    beneficiary_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Chronological timeline, oldest delivery first.
    return await _list_deliveries(
        db,
        request,
        beneficiary_id,
        page=page,
        limit=limit,
        from_date=from_date,
        to_date=to_date,
        oldest_first=True,
    )


@router.get("/{beneficiary_id}/entities")
async def list_beneficiary_entities(
    beneficiary_id: str,
    request: Request,
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _load_or_404(db, beneficiary_id)
    try:
        links = await assignments_repo.list_for_beneficiary(db, beneficiary_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing beneficiary entities") from exc
    items = [
        EntityLinkResponse(entity_id=link.entity_id, entity_type=link.entity_type, created_at=link.created_at).model_dump()
        for link in links
    ]
    return success_response(request=request, data={"items": items})


@router.post("/{beneficiary_id}/entities")
async def add_beneficiary_entity(
    beneficiary_id: str,
    payload: EntityLinkRequest,
    request: Request,
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _load_or_404(db, beneficiary_id)
    try:
        await assignments_repo.ensure_assignment(
            db,
            beneficiary_id=beneficiary_id,
            entity_id=payload.entity_id,
            entity_type=payload.entity_type,
        )
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=audit.BENEFICIARY_ASSIGN,
            description=f"Linked beneficiary to {payload.entity_type} {payload.entity_id}",
            details={"beneficiary_id": beneficiary_id, **payload.model_dump()},
            request=request,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while linking beneficiary") from exc
    await _commit_or_500(db, "Database error while linking beneficiary")
    return success_response(request=request, data={"beneficiary_id": beneficiary_id, **payload.model_dump()})


@router.delete("/{beneficiary_id}/entities")
async def remove_beneficiary_entity(
    beneficiary_id: str,
    request: Request,
    entity_id: str,
    entity_type: Literal["project", "subproject"],
    principal: Principal = Depends(require_roles(*READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _load_or_404(db, beneficiary_id)
    try:
        removed = await assignments_repo.remove_assignment(
            db, beneficiary_id=beneficiary_id, entity_id=entity_id, entity_type=entity_type
        )
        if removed:
            await audit.record_audit(
                session=db,
                user_id=principal.subject_id,
                action=audit.BENEFICIARY_UNASSIGN,
                description=f"Unlinked beneficiary from {entity_type} {entity_id}",
                details={"beneficiary_id": beneficiary_id, "entity_id": entity_id, "entity_type": entity_type},
                request=request,
            )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while unlinking beneficiary") from exc
    await _commit_or_500(db, "Database error while unlinking beneficiary")
    if not removed:
        raise HTTPException(status_code=404, detail="Beneficiary is not linked to this entity")
    return success_response(request=request, data={"removed": True})
