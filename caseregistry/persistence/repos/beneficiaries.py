from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import Beneficiary, BeneficiaryAssignment


async def get_beneficiary(session: AsyncSession, beneficiary_id: str) -> Beneficiary | None:
    result = await session.execute(select(Beneficiary).where(Beneficiary.id == beneficiary_id))
    return result.scalar_one_or_none()


async def list_beneficiaries(
    session: AsyncSession,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[Beneficiary], int]:
    # Newest first, with id as a tiebreak so pages are stable.
    stmt = select(Beneficiary)
    count_stmt = select(func.count()).select_from(Beneficiary)
    if status:
        stmt = stmt.where(Beneficiary.status == status)
        count_stmt = count_stmt.where(Beneficiary.status == status)
    stmt = stmt.order_by(Beneficiary.created_at.desc(), Beneficiary.id.desc()).offset(offset).limit(limit)
    rows = (await session.execute(stmt)).scalars().all()
    total = int((await session.execute(count_stmt)).scalar() or 0)
    return list(rows), total


async def list_for_entity(
    session: AsyncSession,
    *,
    entity_id: str,
    entity_type: str,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[Beneficiary], int]:
    join_on = BeneficiaryAssignment.beneficiary_id == Beneficiary.id
    scope = (
        BeneficiaryAssignment.entity_id == entity_id,
        BeneficiaryAssignment.entity_type == entity_type,
    )
    stmt = (
        select(Beneficiary)
        .join(BeneficiaryAssignment, join_on)
        .where(*scope)
        .order_by(Beneficiary.created_at.desc(), Beneficiary.id.desc())
        .offset(offset)
        .limit(limit)
    )
    count_stmt = select(func.count()).select_from(BeneficiaryAssignment).where(*scope)
    rows = (await session.execute(stmt)).scalars().all()
    total = int((await session.execute(count_stmt)).scalar() or 0)
    return list(rows), total


async def list_demographic_ciphertexts(
    session: AsyncSession,
) -> list[tuple[dict[str, Any] | None, dict[str, Any] | None]]:
    # Fetch only the two columns the aggregate view is allowed to decrypt.
    result = await session.execute(
        select(Beneficiary.dob_enc, Beneficiary.gender_enc).order_by(Beneficiary.created_at.desc())
    )
    return [(row[0], row[1]) for row in result.all()]


async def pseudonym_exists(session: AsyncSession, pseudonym: str) -> bool:
    result = await session.execute(select(Beneficiary.id).where(Beneficiary.pseudonym == pseudonym))
    return result.first() is not None
