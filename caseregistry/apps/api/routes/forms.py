from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.apps.api.deps import Principal, get_db, require_roles
from caseregistry.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from caseregistry.apps.api.response import success_response
from caseregistry.core.errors import CryptoConfigError, EncryptionError, PseudonymAllocationError
from caseregistry.domain.models import ASSIGNABLE_ENTITY_TYPES
from caseregistry.persistence.repos import assignments as assignments_repo
from caseregistry.persistence.repos import beneficiaries as beneficiaries_repo
from caseregistry.persistence.repos import forms as forms_repo
from caseregistry.persistence.repos import service_deliveries as deliveries_repo
from caseregistry.services import audit
from caseregistry.services.beneficiaries.identity import EntityContext, resolve_or_create


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/forms/templates", tags=["forms"], responses=DEFAULT_ERROR_RESPONSES)


class ServiceDeliveryItem(BaseModel):
    service_id: str | None = None
    delivered_at: datetime | None = None
    staff_user_id: str | None = None
    notes: str | None = None


class FormResponseRequest(BaseModel):
    entity_id: str = Field(min_length=1)
    entity_type: Literal["project", "subproject", "activity"]
    data: dict[str, Any]
    latitude: float | None = None
    longitude: float | None = None
    # Direct association skips identity resolution.
    beneficiary_id: str | None = None
    services: list[ServiceDeliveryItem] = Field(default_factory=list)


class FormResponseCreated(BaseModel):
    id: str
    form_template_id: str
    entity_id: str
    entity_type: str
    beneficiary_id: str | None
    beneficiary_created: bool
    services: dict[str, Any]


async def _record_deliveries(
    db: AsyncSession,
    payload: FormResponseRequest,
    *,
    beneficiary_id: str | None,
    form_response_id: str,
    staff_user_id: str,
) -> dict[str, Any]:
    # Deliveries without a service id or a linked beneficiary are reported back, not rejected.
    created = 0
    skipped: list[dict[str, str]] = []
    for item in payload.services:
        if not item.service_id:
            skipped.append({"service_id": "unknown", "reason": "missing service_id"})
            continue
        if not beneficiary_id:
            skipped.append({"service_id": item.service_id, "reason": "no beneficiary linked"})
            continue
        await deliveries_repo.create_delivery(
            db,
            service_id=item.service_id,
            beneficiary_id=beneficiary_id,
            entity_id=payload.entity_id,
            entity_type=payload.entity_type,
            form_response_id=form_response_id,
            staff_user_id=item.staff_user_id or staff_user_id,
            delivered_at=item.delivered_at or datetime.now(timezone.utc),
            notes=item.notes or None,
        )
        created += 1
    if skipped:
        logger.info(
            "service_deliveries_skipped form_response_id=%s skipped=%s",
            form_response_id,
            len(skipped),
        )
    return {"requested": len(payload.services), "created": created, "skipped": skipped}


@router.post("/{template_id}/responses", status_code=201)
async def submit_form_response(
    template_id: str,
    payload: FormResponseRequest,
    request: Request,
    principal: Principal = Depends(require_roles()),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        template = await forms_repo.get_template(db, template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Form template not found")

        created = False
        beneficiary_id = payload.beneficiary_id
        if beneficiary_id:
            if await beneficiaries_repo.get_beneficiary(db, beneficiary_id) is None:
                raise HTTPException(status_code=400, detail="Invalid beneficiary_id: beneficiary not found")
            if payload.entity_type in ASSIGNABLE_ENTITY_TYPES:
                await assignments_repo.ensure_assignment(
                    db,
                    beneficiary_id=beneficiary_id,
                    entity_id=payload.entity_id,
                    entity_type=payload.entity_type,
                )
        else:
            result = await resolve_or_create(
                db,
                form_template_id=template_id,
                data=payload.data,
                entity_context=EntityContext(entity_id=payload.entity_id, entity_type=payload.entity_type),
            )
            beneficiary_id = result.beneficiary_id
            created = result.created

        form_response = await forms_repo.create_response(
            db,
            form_template_id=template_id,
            entity_id=payload.entity_id,
            entity_type=payload.entity_type,
            submitted_by=principal.subject_id,
            beneficiary_id=beneficiary_id,
            data_json=payload.data,
            latitude=payload.latitude,
            longitude=payload.longitude,
        )
        services = await _record_deliveries(
            db,
            payload,
            beneficiary_id=beneficiary_id,
            form_response_id=form_response.id,
            staff_user_id=principal.subject_id,
        )
        await audit.record_audit(
            session=db,
            user_id=principal.subject_id,
            action=audit.FORM_RESPONSE_SUBMIT,
            description=f"Submitted response to form '{template.name}' for {payload.entity_type} {payload.entity_id}",
            details={
                "form_template_id": template_id,
                "response_id": form_response.id,
                "entity_id": payload.entity_id,
                "entity_type": payload.entity_type,
                "beneficiary_id": beneficiary_id,
                "beneficiary_created": created,
                "services": services,
            },
            request=request,
        )
        await db.commit()
    except (EncryptionError, CryptoConfigError, PseudonymAllocationError) as exc:
        # No partially encrypted beneficiary may survive.
        await db.rollback()
        logger.error("form_response_submit_failed form_template_id=%s reason=%s", template_id, type(exc).__name__)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while saving form response") from exc

    body = FormResponseCreated(
        id=form_response.id,
        form_template_id=template_id,
        entity_id=payload.entity_id,
        entity_type=payload.entity_type,
        beneficiary_id=beneficiary_id,
        beneficiary_created=created,
        services=services,
    )
    return success_response(request=request, data=body.model_dump())
