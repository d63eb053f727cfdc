from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.apps.api.deps import Principal, get_db, require_roles
from caseregistry.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from caseregistry.apps.api.response import success_response
from caseregistry.domain.models import BeneficiaryMapping
from caseregistry.persistence.repos import forms as forms_repo
from caseregistry.persistence.repos import mappings as mappings_repo
from caseregistry.services import audit
from caseregistry.services.auth.api_keys import PROGRAM_MANAGER, SUPER_ADMIN, SYSTEM_ADMIN
from caseregistry.services.beneficiaries.mapping import validate_mapping


router = APIRouter(prefix="/forms/templates", tags=["beneficiary-mappings"], responses=DEFAULT_ERROR_RESPONSES)

MAPPING_READ_ROLES = (SUPER_ADMIN, SYSTEM_ADMIN, PROGRAM_MANAGER)
MAPPING_WRITE_ROLES = (SUPER_ADMIN, SYSTEM_ADMIN)


class MappingResponse(BaseModel):
    id: str
    form_template_id: str
    mapping: dict[str, Any]
    created_at: datetime | None
    updated_at: datetime | None


def _to_response(row: BeneficiaryMapping) -> dict[str, Any]:
    return MappingResponse(
        id=row.id,
        form_template_id=row.form_template_id,
        mapping=row.mapping_json,
        created_at=row.created_at,
        updated_at=row.updated_at,
    ).model_dump()


async def _require_template(db: AsyncSession, template_id: str) -> None:
    try:
        template = await forms_repo.get_template(db, template_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching form template") from exc
    if template is None:
        raise HTTPException(status_code=404, detail="Form template not found")


@router.get("/{template_id}/beneficiary-mapping")
async def get_beneficiary_mapping(
    template_id: str,
    request: Request,
    principal: Principal = Depends(require_roles(*MAPPING_READ_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        row = await mappings_repo.get_for_template(db, template_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching beneficiary mapping") from exc
    if row is None:
        raise HTTPException(status_code=404, detail="Beneficiary mapping not found")
    return success_response(request=request, data=_to_response(row))


@router.post("/{template_id}/beneficiary-mapping", status_code=201)
async def create_beneficiary_mapping(
    template_id: str,
    request: Request,
    mapping: Any = Body(..., embed=True),
    principal: Principal = Depends(require_roles(*MAPPING_WRITE_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # MappingValidationError is rendered as 400 by the app-level handler.
    document = validate_mapping(mapping)
    await _require_template(db, template_id)
    try:
        if await mappings_repo.get_for_template(db, template_id) is not None:
            raise HTTPException(
                status_code=409,
                detail={"code": "MAPPING_EXISTS", "message": "Beneficiary mapping already exists for this template"},
            )
        row = await mappings_repo.create_mapping(db, form_template_id=template_id, mapping_json=document)
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=audit.MAPPING_CREATE,
            description=f"Created beneficiary mapping for form template {template_id}",
            details={"form_template_id": template_id, "strategies": document["strategies"]},
            request=request,
        )
        await db.commit()
        await db.refresh(row)
    except IntegrityError as exc:
        # Lost a race with a concurrent create for the same template.
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "MAPPING_EXISTS", "message": "Beneficiary mapping already exists for this template"},
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating beneficiary mapping") from exc
    return success_response(request=request, data=_to_response(row))


@router.put("/{template_id}/beneficiary-mapping")
async def upsert_beneficiary_mapping(
    template_id: str,
    request: Request,
    response: Response,
    mapping: Any = Body(..., embed=True),
    principal: Principal = Depends(require_roles(*MAPPING_WRITE_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    document = validate_mapping(mapping)
    await _require_template(db, template_id)
    try:
        row, created = await mappings_repo.upsert_mapping(db, form_template_id=template_id, mapping_json=document)
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=audit.MAPPING_CREATE if created else audit.MAPPING_UPDATE,
            description=f"{'Created' if created else 'Updated'} beneficiary mapping for form template {template_id}",
            details={"form_template_id": template_id, "strategies": document["strategies"]},
            request=request,
        )
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while saving beneficiary mapping") from exc
    if created:
        response.status_code = 201
    return success_response(request=request, data=_to_response(row))
