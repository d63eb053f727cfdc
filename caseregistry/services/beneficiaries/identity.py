from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.core.config import Settings, get_settings
from caseregistry.core.errors import PseudonymAllocationError
from caseregistry.domain.models import ASSIGNABLE_ENTITY_TYPES, Beneficiary, BeneficiaryMatchKey
from caseregistry.persistence.repos import assignments as assignments_repo
from caseregistry.persistence.repos import beneficiaries as beneficiaries_repo
from caseregistry.persistence.repos import mappings as mappings_repo
from caseregistry.persistence.repos import match_keys as match_keys_repo
from caseregistry.persistence.repos.match_keys import CandidateKey
from caseregistry.services.beneficiaries.mapping import IDENTITY_ATTRIBUTES, enabled_strategies, mapped_fields
from caseregistry.services.crypto.fields import FieldCipher, get_field_cipher, make_pseudonym
from caseregistry.services.crypto.normalize import normalize_dob, normalize_name, normalize_phone


logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
_PSEUDONYM_ATTEMPTS = 5


@dataclass(frozen=True)
class EntityContext:
    entity_id: str
    entity_type: str


@dataclass(frozen=True)
class ResolutionResult:
    beneficiary_id: str | None
    created: bool


@dataclass(frozen=True)
class NormalizedIdentity:
    # Comparison forms only; never persisted or logged.
    name: str = ""
    dob: str = ""
    phone: str = ""
    national_id: str = ""


def get_by_path(obj: Any, path: str | None) -> Any:
    """Walk a dot-separated path through nested mappings and lists.

    Numeric segments index into lists (``members.0.name``). A missing key, an
    out-of-range index or a scalar intermediate value yields None.
    """
    if obj is None or not path:
        return None
    current = obj
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdecimal():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        value = "true" if value else "false"
    text = str(value).strip()
    return text or None


def _canonical_gender(value: Any) -> str | None:
    text = _as_text(value)
    if not text:
        return None
    initial = text[0].upper()
    return initial if initial in ("M", "F") else None


def _canonical_household(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value))
    match = _LEADING_INT.match(str(value))
    return str(int(match.group(1))) if match else None


def canonicalize_plaintext(values: Mapping[str, Any]) -> dict[str, str | None]:
    """Turn raw attribute values into the plaintext that gets encrypted.

    Keys are stored attribute names. Only the keys present in ``values`` appear in
    the result; a None result means "supplied but empty or unusable".
    """
    canonical: dict[str, str | None] = {}
    for field, raw in values.items():
        if field == "dob":
            canonical[field] = normalize_dob(raw) or None
        elif field == "phone":
            canonical[field] = normalize_phone(raw) or None
        elif field == "gender":
            canonical[field] = _canonical_gender(raw)
        elif field == "household_members":
            canonical[field] = _canonical_household(raw)
        else:
            canonical[field] = _as_text(raw)
    return canonical


def normalized_identity(plaintext: Mapping[str, str | None]) -> NormalizedIdentity:
    # Expects canonicalize_plaintext output, where dob and phone are already normalized.
    full_name = f"{normalize_name(plaintext.get('first_name'))} {normalize_name(plaintext.get('last_name'))}"
    return NormalizedIdentity(
        name=full_name.strip(),
        dob=plaintext.get("dob") or "",
        phone=plaintext.get("phone") or "",
        # National IDs are compared exactly; only surrounding whitespace is dropped.
        national_id=(plaintext.get("national_id") or "").strip(),
    )


def extract_identity(data: Any, fields: Mapping[str, str]) -> dict[str, str | None]:
    # Pull every mapped attribute out of the payload; unknown mapping keys are ignored.
    raw: dict[str, Any] = {}
    for mapping_key, attribute in IDENTITY_ATTRIBUTES.items():
        path = fields.get(mapping_key)
        if path:
            raw[attribute] = get_by_path(data, path)
    return canonicalize_plaintext(raw)


_REQUIRED_INPUTS: dict[str, Callable[[NormalizedIdentity], bool]] = {
    "nationalId": lambda identity: bool(identity.national_id),
    "phone+dob": lambda identity: bool(identity.phone and identity.dob),
    "name+dob": lambda identity: bool(identity.name and identity.dob),
}

_COMPOSITES: dict[str, Callable[[NormalizedIdentity], str]] = {
    "nationalId": lambda identity: identity.national_id,
    "phone+dob": lambda identity: f"{identity.phone}|{identity.dob}",
    "name+dob": lambda identity: f"{identity.name}|{identity.dob}",
}


def required_inputs_present(strategy: str, identity: NormalizedIdentity) -> bool:
    check = _REQUIRED_INPUTS.get(strategy)
    return bool(check and check(identity))


def build_candidate_keys(
    identity: NormalizedIdentity,
    strategies: Iterable[str],
    cipher: FieldCipher,
) -> list[CandidateKey]:
    keys: list[CandidateKey] = []
    for strategy in dict.fromkeys(strategies):
        if not required_inputs_present(strategy, identity):
            continue
        keys.append(CandidateKey(key_type=strategy, key_hash=cipher.hmac_sha256(_COMPOSITES[strategy](identity))))
    return keys


def choose_match(matches: list[BeneficiaryMatchKey], precedence: list[str]) -> str | None:
    # Strongest strategy wins; within a strategy the oldest key wins (matches arrive in creation order).
    if not matches:
        return None
    rank = {strategy: index for index, strategy in enumerate(precedence)}
    ordered = sorted(
        enumerate(matches),
        key=lambda item: (rank.get(item[1].key_type, len(rank)), item[0]),
    )
    winner = ordered[0][1].beneficiary_id
    distinct = list(dict.fromkeys(match.beneficiary_id for _, match in ordered))
    if len(distinct) > 1:
        logger.warning(
            "beneficiary_match_collision winner=%s candidates=%s key_types=%s",
            winner,
            ",".join(distinct),
            ",".join(sorted({match.key_type for match in matches})),
        )
    return winner


def encrypt_plaintext(plaintext: Mapping[str, str | None], cipher: FieldCipher) -> dict[str, Any]:
    # Column name -> encrypted object (or None); EncryptionError propagates to roll the caller back.
    return {f"{field}_enc": cipher.encrypt_field(value) for field, value in plaintext.items()}


async def allocate_pseudonym(session: AsyncSession) -> str:
    # Pseudonyms carry 32 random bits; redraw on the rare collision instead of failing the insert.
    for _ in range(_PSEUDONYM_ATTEMPTS):
        candidate = make_pseudonym()
        if not await beneficiaries_repo.pseudonym_exists(session, candidate):
            return candidate
    raise PseudonymAllocationError("could not allocate a unique beneficiary pseudonym")


async def _insert_beneficiary(
    session: AsyncSession,
    plaintext: Mapping[str, str | None],
    cipher: FieldCipher,
) -> Beneficiary:
    beneficiary = Beneficiary(
        id=uuid4().hex,
        pseudonym=await allocate_pseudonym(session),
        status="active",
        **encrypt_plaintext(plaintext, cipher),
    )
    session.add(beneficiary)
    await session.flush()
    return beneficiary


async def _discard_beneficiary(session: AsyncSession, beneficiary: Beneficiary) -> None:
    # Only ever called on a row inserted earlier in this same transaction.
    await match_keys_repo.delete_for_beneficiary(session, beneficiary.id)
    await session.delete(beneficiary)
    await session.flush()


async def resolve_or_create(
    session: AsyncSession,
    *,
    form_template_id: str,
    data: Any,
    entity_context: EntityContext | None = None,
    cipher: FieldCipher | None = None,
    settings: Settings | None = None,
) -> ResolutionResult:
    """Attach a form submission to an existing beneficiary or create one.

    Runs inside the caller's transaction and never commits. Forms without a
    beneficiary mapping are a no-op. When a concurrent writer claims one of the
    candidate keys between lookup and insert, the freshly inserted row is
    discarded and the submission attaches to the key owner instead.
    """
    mapping = await mappings_repo.get_for_template(session, form_template_id)
    if mapping is None:
        return ResolutionResult(beneficiary_id=None, created=False)

    resolved_settings = settings or get_settings()
    resolved_cipher = cipher or get_field_cipher()
    precedence = resolved_settings.strategy_precedence()

    plaintext = extract_identity(data, mapped_fields(mapping.mapping_json))
    identity = normalized_identity(plaintext)
    candidates = build_candidate_keys(identity, enabled_strategies(mapping.mapping_json), resolved_cipher)

    matches = await match_keys_repo.find_matches(session, candidates)
    existing_id = choose_match(matches, precedence)
    beneficiary = await session.get(Beneficiary, existing_id) if existing_id is not None else None

    created = beneficiary is None
    if created:
        beneficiary = await _insert_beneficiary(session, plaintext, resolved_cipher)
        taken = await match_keys_repo.ensure_keys(session, beneficiary_id=beneficiary.id, candidates=candidates)
        if taken:
            await _discard_beneficiary(session, beneficiary)
            matches = await match_keys_repo.find_matches(session, candidates)
            winner_id = choose_match(matches, precedence)
            logger.info(
                "beneficiary_create_race_lost form_template_id=%s winner=%s key_types=%s",
                form_template_id,
                winner_id,
                ",".join(key.key_type for key in taken),
            )
            beneficiary = await session.get(Beneficiary, winner_id)
            created = False

    if not created:
        # Supplied values overwrite; absent values keep the prior ciphertext.
        supplied = {field: value for field, value in plaintext.items() if value is not None}
        for column, encrypted in encrypt_plaintext(supplied, resolved_cipher).items():
            setattr(beneficiary, column, encrypted)
        await session.flush()
        # Keys owned by another beneficiary stay with their owner.
        await match_keys_repo.ensure_keys(session, beneficiary_id=beneficiary.id, candidates=candidates)

    if entity_context is not None and entity_context.entity_type in ASSIGNABLE_ENTITY_TYPES:
        await assignments_repo.ensure_assignment(
            session,
            beneficiary_id=beneficiary.id,
            entity_id=entity_context.entity_id,
            entity_type=entity_context.entity_type,
        )

    logger.info(
        "beneficiary_resolved form_template_id=%s beneficiary_id=%s created=%s keys=%s",
        form_template_id,
        beneficiary.id,
        created,
        len(candidates),
    )
    return ResolutionResult(beneficiary_id=beneficiary.id, created=created)
