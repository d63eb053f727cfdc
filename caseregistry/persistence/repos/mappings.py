from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import BeneficiaryMapping


async def get_for_template(session: AsyncSession, form_template_id: str) -> BeneficiaryMapping | None:
    result = await session.execute(
        select(BeneficiaryMapping).where(BeneficiaryMapping.form_template_id == form_template_id)
    )
    return result.scalar_one_or_none()


async def create_mapping(
    session: AsyncSession,
    *,
    form_template_id: str,
    mapping_json: dict[str, Any],
) -> BeneficiaryMapping:
    mapping = BeneficiaryMapping(id=uuid4().hex, form_template_id=form_template_id, mapping_json=mapping_json)
    session.add(mapping)
    await session.flush()
    return mapping


async def upsert_mapping(
    session: AsyncSession,
    *,
    form_template_id: str,
    mapping_json: dict[str, Any],
) -> tuple[BeneficiaryMapping, bool]:
    # PUT semantics: replace when present, create otherwise; returns (row, created).
    existing = await get_for_template(session, form_template_id)
    if existing is None:
        return await create_mapping(session, form_template_id=form_template_id, mapping_json=mapping_json), True
    existing.mapping_json = mapping_json
    await session.flush()
    return existing, False
