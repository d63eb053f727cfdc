from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import BeneficiaryMatchKey
from caseregistry.persistence.db import dialect_insert


@dataclass(frozen=True)
class CandidateKey:
    key_type: str
    key_hash: str


async def find_matches(session: AsyncSession, candidates: list[CandidateKey]) -> list[BeneficiaryMatchKey]:
    # Creation order gives a stable tie-break baseline across databases.
    if not candidates:
        return []
    predicate = or_(
        *[
            and_(BeneficiaryMatchKey.key_type == key.key_type, BeneficiaryMatchKey.key_hash == key.key_hash)
            for key in candidates
        ]
    )
    result = await session.execute(
        select(BeneficiaryMatchKey)
        .where(predicate)
        .order_by(BeneficiaryMatchKey.created_at, BeneficiaryMatchKey.id)
    )
    return list(result.scalars().all())


async def ensure_keys(
    session: AsyncSession,
    *,
    beneficiary_id: str,
    candidates: list[CandidateKey],
) -> list[CandidateKey]:
    """Insert each candidate key unless another row already owns it.

    Returns the candidates that were skipped because the (key_type, key_hash)
    pair already exists, including keys this beneficiary owns from earlier
    submissions. Callers that just created the beneficiary treat a non-empty
    result as a lost race.
    """
    conflicts: list[CandidateKey] = []
    for key in candidates:
        stmt = dialect_insert(session, BeneficiaryMatchKey).values(
            id=uuid4().hex,
            beneficiary_id=beneficiary_id,
            key_type=key.key_type,
            key_hash=key.key_hash,
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[BeneficiaryMatchKey.key_type, BeneficiaryMatchKey.key_hash]
        ).returning(BeneficiaryMatchKey.id)
        result = await session.execute(stmt)
        if result.first() is None:
            conflicts.append(key)
    return conflicts


async def delete_for_beneficiary(session: AsyncSession, beneficiary_id: str) -> None:
    await session.execute(delete(BeneficiaryMatchKey).where(BeneficiaryMatchKey.beneficiary_id == beneficiary_id))
