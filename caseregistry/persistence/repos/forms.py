from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import FormResponse, FormTemplate


async def get_template(session: AsyncSession, form_template_id: str) -> FormTemplate | None:
    result = await session.execute(select(FormTemplate).where(FormTemplate.id == form_template_id))
    return result.scalar_one_or_none()


async def create_response(
    session: AsyncSession,
    *,
    form_template_id: str,
    entity_id: str,
    entity_type: str,
    submitted_by: str,
    beneficiary_id: str | None,
    data_json: dict[str, Any],
    latitude: float | None = None,
    longitude: float | None = None,
) -> FormResponse:
    response = FormResponse(
        id=uuid4().hex,
        form_template_id=form_template_id,
        entity_id=entity_id,
        entity_type=entity_type,
        submitted_by=submitted_by,
        beneficiary_id=beneficiary_id,
        data_json=data_json,
        latitude=latitude,
        longitude=longitude,
    )
    session.add(response)
    await session.flush()
    return response
