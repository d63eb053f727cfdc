from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from typing import Any, Iterable

from starlette.requests import Request

from caseregistry.core.config import Settings, get_settings
from caseregistry.core.errors import DecryptionError
from caseregistry.domain.models import PII_FIELDS, Beneficiary
from caseregistry.services.audit import PII_AGGREGATE, PII_LIST_READ, PII_READ, record_audit
from caseregistry.services.crypto.fields import FieldCipher, get_field_cipher


logger = logging.getLogger(__name__)

PII_ACCESS_HEADER = "X-PII-Access"
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}

AGE_BUCKETS: tuple[tuple[str, int | None], ...] = (
    ("0-20", 20),
    ("21-35", 35),
    ("36-55", 55),
    ("55+", None),
)
GENDER_LABELS: dict[str, str] = {"M": "Male", "F": "Female"}
UNKNOWN_GENDER = "Unknown"


@dataclass
class Projection:
    safe_fields: dict[str, Any]
    encrypted_fields: dict[str, Any]
    decrypted_fields: dict[str, str] | None = None

    @property
    def disclosed(self) -> bool:
        return self.decrypted_fields is not None

    def to_payload(self) -> dict[str, Any]:
        # Non-privileged payloads never carry a "pii" key, not even an empty one.
        payload = {**self.safe_fields, "pii_enc": self.encrypted_fields}
        if self.decrypted_fields is not None:
            payload["pii"] = self.decrypted_fields
        return payload


def safe_fields(record: Beneficiary) -> dict[str, Any]:
    return {
        "id": record.id,
        "pseudonym": record.pseudonym,
        "status": record.status,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def is_privileged(roles: Iterable[str], settings: Settings | None = None) -> bool:
    resolved = settings or get_settings()
    return bool(resolved.privileged_roles().intersection(roles))


def decrypt_record(
    record: Beneficiary,
    cipher: FieldCipher,
    fields: Iterable[str] = PII_FIELDS,
) -> dict[str, str]:
    # A field that fails to decrypt is left out; the rest of the record is still returned.
    decrypted: dict[str, str] = {}
    for field in fields:
        encrypted = getattr(record, f"{field}_enc")
        if not encrypted:
            continue
        try:
            value = cipher.decrypt_field(encrypted)
        except DecryptionError:
            logger.warning("pii_field_decrypt_failed beneficiary_id=%s field=%s", record.id, field)
            continue
        if value is not None:
            decrypted[field] = value
    return decrypted


def project_for_caller(
    record: Beneficiary,
    caller_roles: Iterable[str],
    *,
    cipher: FieldCipher | None = None,
    settings: Settings | None = None,
) -> Projection:
    """Build the response view of one beneficiary for the given role set.

    Pure with respect to storage: the caller decides how the disclosure is
    audited (see ``disclose_one`` and ``disclose_many``).
    """
    projection = Projection(safe_fields=safe_fields(record), encrypted_fields=record.encrypted_fields())
    if is_privileged(caller_roles, settings):
        projection.decrypted_fields = decrypt_record(record, cipher or get_field_cipher())
    return projection


def project_many(
    records: Iterable[Beneficiary],
    caller_roles: Iterable[str],
    *,
    cipher: FieldCipher | None = None,
    settings: Settings | None = None,
) -> list[Projection]:
    roles = list(caller_roles)
    resolved_settings = settings or get_settings()
    resolved_cipher = cipher or (get_field_cipher() if is_privileged(roles, resolved_settings) else None)
    return [
        project_for_caller(record, roles, cipher=resolved_cipher, settings=resolved_settings)
        for record in records
    ]


def disclosure_headers(disclosed: bool) -> dict[str, str]:
    if disclosed:
        return {**NO_STORE_HEADERS, PII_ACCESS_HEADER: "decrypt"}
    return {PII_ACCESS_HEADER: "encrypted"}


async def disclose_one(
    record: Beneficiary,
    *,
    user_id: str,
    roles: Iterable[str],
    route: str,
    request: Request | None = None,
    cipher: FieldCipher | None = None,
    settings: Settings | None = None,
) -> Projection:
    projection = project_for_caller(record, roles, cipher=cipher, settings=settings)
    if projection.disclosed:
        await record_audit(
            user_id=user_id,
            action=PII_READ,
            description=f"Read PII for beneficiary '{record.pseudonym}' via {route}",
            details={"beneficiary_id": record.id, "fields": sorted(projection.decrypted_fields or {})},
            request=request,
        )
    return projection


async def disclose_many(
    records: list[Beneficiary],
    *,
    user_id: str,
    roles: Iterable[str],
    route: str,
    request: Request | None = None,
    details: dict[str, Any] | None = None,
    cipher: FieldCipher | None = None,
    settings: Settings | None = None,
) -> list[Projection]:
    # One audit row covers the whole batch.
    projections = project_many(records, roles, cipher=cipher, settings=settings)
    if projections and projections[0].disclosed:
        await record_audit(
            user_id=user_id,
            action=PII_LIST_READ,
            description=f"Listed beneficiaries with PII via {route}",
            details={
                **(details or {}),
                "count": len(projections),
                "beneficiary_ids": [projection.safe_fields["id"] for projection in projections],
            },
            request=request,
        )
    return projections


async def disclose_pii_only(
    record: Beneficiary,
    *,
    user_id: str,
    route: str,
    request: Request | None = None,
    cipher: FieldCipher | None = None,
) -> dict[str, str]:
    # Privileged-only projection; the role check happens at the route boundary.
    decrypted = decrypt_record(record, cipher or get_field_cipher())
    await record_audit(
        user_id=user_id,
        action=PII_READ,
        description=f"Read PII for beneficiary '{record.pseudonym}' via {route}",
        details={"beneficiary_id": record.id, "fields": sorted(decrypted)},
        request=request,
    )
    return decrypted


def age_on(dob: date, today: date) -> int:
    years = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        years -= 1
    return years


def age_bucket(age: int) -> str:
    for label, upper in AGE_BUCKETS:
        if upper is None or age <= upper:
            return label
    return AGE_BUCKETS[-1][0]


def _decrypt_or_none(cipher: FieldCipher, encrypted: dict[str, Any] | None, field: str) -> str | None:
    try:
        return cipher.decrypt_field(encrypted)
    except DecryptionError:
        logger.warning("pii_field_decrypt_failed field=%s", field)
        return None


def compute_demographics(
    rows: Iterable[tuple[dict[str, Any] | None, dict[str, Any] | None]],
    *,
    cipher: FieldCipher | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """Bucket (dob_enc, gender_enc) pairs into age ranges and gender counts.

    Plaintext lives only inside the loop; the result holds counts alone.
    Unreadable or missing dates are not counted in any age bucket.
    """
    resolved_cipher = cipher or get_field_cipher()
    reference = today or date.today()
    ages = {label: 0 for label, _ in AGE_BUCKETS}
    genders = {label: 0 for label in (*GENDER_LABELS.values(), UNKNOWN_GENDER)}
    total = 0
    for dob_enc, gender_enc in rows:
        total += 1
        dob_text = _decrypt_or_none(resolved_cipher, dob_enc, "dob")
        if dob_text:
            try:
                dob = date.fromisoformat(dob_text)
            except ValueError:
                dob = None
            if dob is not None and dob <= reference:
                ages[age_bucket(age_on(dob, reference))] += 1
        gender = _decrypt_or_none(resolved_cipher, gender_enc, "gender")
        genders[GENDER_LABELS.get(gender or "", UNKNOWN_GENDER)] += 1
    return {
        "total": total,
        "age": [{"name": label, "value": count} for label, count in ages.items()],
        "gender": [{"name": label, "count": count} for label, count in genders.items()],
    }


async def disclose_demographics(
    rows: list[tuple[dict[str, Any] | None, dict[str, Any] | None]],
    *,
    user_id: str,
    request: Request | None = None,
    cipher: FieldCipher | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    summary = compute_demographics(rows, cipher=cipher, today=today)
    await record_audit(
        user_id=user_id,
        action=PII_AGGREGATE,
        description="Computed beneficiary demographics",
        details={"total": summary["total"], "fields": ["dob", "gender"]},
        request=request,
    )
    return summary
