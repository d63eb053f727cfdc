from __future__ import annotations

import logging
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.core.config import MATCH_STRATEGIES
from caseregistry.core.errors import BeneficiaryNotFoundError, DecryptionError
from caseregistry.domain.models import PII_FIELDS, Beneficiary
from caseregistry.persistence.repos import beneficiaries as beneficiaries_repo
from caseregistry.persistence.repos import match_keys as match_keys_repo
from caseregistry.services.beneficiaries.identity import (
    allocate_pseudonym,
    build_candidate_keys,
    canonicalize_plaintext,
    encrypt_plaintext,
    normalized_identity,
)
from caseregistry.services.crypto.fields import FieldCipher, get_field_cipher


logger = logging.getLogger(__name__)

# Fields that feed match-key composites; updates re-derive keys from these.
_KEY_FIELDS = ("first_name", "last_name", "dob", "phone", "national_id")


def _supplied_fields(values: Mapping[str, Any]) -> dict[str, Any]:
    return {field: values[field] for field in PII_FIELDS if field in values}


async def create_beneficiary(
    session: AsyncSession,
    *,
    values: Mapping[str, Any],
    status: str = "active",
    cipher: FieldCipher | None = None,
) -> Beneficiary:
    """Create a beneficiary from operator-entered plaintext and index all its match keys."""
    resolved_cipher = cipher or get_field_cipher()
    plaintext = canonicalize_plaintext(_supplied_fields(values))
    beneficiary = Beneficiary(
        id=uuid4().hex,
        pseudonym=await allocate_pseudonym(session),
        status=status,
        **encrypt_plaintext(plaintext, resolved_cipher),
    )
    session.add(beneficiary)
    await session.flush()

    candidates = build_candidate_keys(normalized_identity(plaintext), MATCH_STRATEGIES, resolved_cipher)
    await match_keys_repo.ensure_keys(session, beneficiary_id=beneficiary.id, candidates=candidates)
    return beneficiary


def _decrypt_key_fields(beneficiary: Beneficiary, cipher: FieldCipher) -> dict[str, str | None]:
    current: dict[str, str | None] = {}
    for field in _KEY_FIELDS:
        try:
            current[field] = cipher.decrypt_field(getattr(beneficiary, f"{field}_enc"))
        except DecryptionError:
            logger.warning("beneficiary_key_field_unreadable beneficiary_id=%s field=%s", beneficiary.id, field)
            current[field] = None
    return current


async def update_beneficiary(
    session: AsyncSession,
    beneficiary_id: str,
    *,
    values: Mapping[str, Any],
    status: str | None = None,
    cipher: FieldCipher | None = None,
) -> Beneficiary:
    """Apply a partial update; fields not present in ``values`` stay untouched.

    Supplying a field with a null value clears it. Match keys are re-derived from
    the merged identity and added idempotently; previous keys are kept.
    """
    resolved_cipher = cipher or get_field_cipher()
    beneficiary = await beneficiaries_repo.get_beneficiary(session, beneficiary_id)
    if beneficiary is None:
        raise BeneficiaryNotFoundError(beneficiary_id)

    plaintext = canonicalize_plaintext(_supplied_fields(values))
    for column, encrypted in encrypt_plaintext(plaintext, resolved_cipher).items():
        setattr(beneficiary, column, encrypted)
    if status is not None:
        beneficiary.status = status
    await session.flush()

    if any(field in plaintext for field in _KEY_FIELDS):
        merged = _decrypt_key_fields(beneficiary, resolved_cipher)
        candidates = build_candidate_keys(normalized_identity(merged), MATCH_STRATEGIES, resolved_cipher)
        await match_keys_repo.ensure_keys(session, beneficiary_id=beneficiary.id, candidates=candidates)
    return beneficiary


async def set_status(session: AsyncSession, beneficiary_id: str, status: str) -> Beneficiary:
    beneficiary = await beneficiaries_repo.get_beneficiary(session, beneficiary_id)
    if beneficiary is None:
        raise BeneficiaryNotFoundError(beneficiary_id)
    beneficiary.status = status
    await session.flush()
    return beneficiary
