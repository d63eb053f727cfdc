from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import BeneficiaryAssignment
from caseregistry.persistence.db import dialect_insert


async def ensure_assignment(
    session: AsyncSession,
    *,
    beneficiary_id: str,
    entity_id: str,
    entity_type: str,
) -> None:
    # Idempotent link; repeated submissions for the same entity keep a single row.
    stmt = dialect_insert(session, BeneficiaryAssignment).values(
        id=uuid4().hex,
        beneficiary_id=beneficiary_id,
        entity_id=entity_id,
        entity_type=entity_type,
    )
    stmt = stmt.on_conflict_do_nothing(
        index_elements=[
            BeneficiaryAssignment.beneficiary_id,
            BeneficiaryAssignment.entity_id,
            BeneficiaryAssignment.entity_type,
        ]
    )
    await session.execute(stmt)


async def remove_assignment(
    session: AsyncSession,
    *,
    beneficiary_id: str,
    entity_id: str,
    entity_type: str,
) -> bool:
    result = await session.execute(
        delete(BeneficiaryAssignment).where(
            BeneficiaryAssignment.beneficiary_id == beneficiary_id,
            BeneficiaryAssignment.entity_id == entity_id,
            BeneficiaryAssignment.entity_type == entity_type,
        )
    )
    return bool(result.rowcount)


async def list_for_beneficiary(session: AsyncSession, beneficiary_id: str) -> list[BeneficiaryAssignment]:
    result = await session.execute(
        select(BeneficiaryAssignment)
        .where(BeneficiaryAssignment.beneficiary_id == beneficiary_id)
        .order_by(BeneficiaryAssignment.created_at, BeneficiaryAssignment.id)
    )
    return list(result.scalars().all())
