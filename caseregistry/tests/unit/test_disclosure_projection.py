from __future__ import annotations

from datetime import date

from caseregistry.domain.models import Beneficiary
from caseregistry.services.beneficiaries.disclosure import (
    age_bucket,
    age_on,
    compute_demographics,
    disclosure_headers,
    project_for_caller,
    project_many,
)
from caseregistry.services.crypto.fields import FieldCipher


CIPHER = FieldCipher(enc_key=b"\x11" * 32, hash_key=b"unit-test-hash-key-0001")
OTHER_CIPHER = FieldCipher(enc_key=b"\x22" * 32, hash_key=b"unit-test-hash-key-0001")


def _beneficiary(**plaintext: str) -> Beneficiary:
    encrypted = {f"{field}_enc": CIPHER.encrypt_field(value) for field, value in plaintext.items()}
    return Beneficiary(id="b-1", pseudonym="B-0000ABCD", status="active", **encrypted)


def test_non_privileged_projection_has_no_pii_key() -> None:
    record = _beneficiary(first_name="Ilir", national_id="A123")
    payload = project_for_caller(record, ["Program Manager"], cipher=CIPHER).to_payload()
    assert "pii" not in payload
    assert payload["pii_enc"]["first_name"]["alg"] == "aes-256-gcm"
    assert payload["pii_enc"]["dob"] is None
    assert payload["pseudonym"] == "B-0000ABCD"
    assert "Ilir" not in str(payload)


def test_privileged_projection_decrypts_present_fields() -> None:
    record = _beneficiary(first_name="Ilir", national_id="A123")
    projection = project_for_caller(record, ["System Administrator"], cipher=CIPHER)
    assert projection.disclosed
    assert projection.to_payload()["pii"] == {"first_name": "Ilir", "national_id": "A123"}


def test_undecryptable_field_is_omitted_not_fatal() -> None:
    record = _beneficiary(first_name="Ilir")
    record.last_name_enc = OTHER_CIPHER.encrypt_field("Berisha")
    projection = project_for_caller(record, ["SuperAdmin"], cipher=CIPHER)
    assert projection.decrypted_fields == {"first_name": "Ilir"}


def test_project_many_uses_one_decision_for_the_batch() -> None:
    records = [_beneficiary(first_name="Ilir"), _beneficiary(first_name="Arta")]
    hidden = project_many(records, ["Sub-Project Manager"], cipher=CIPHER)
    shown = project_many(records, ["SuperAdmin", "Field Operator"], cipher=CIPHER)
    assert not any(projection.disclosed for projection in hidden)
    assert [projection.decrypted_fields for projection in shown] == [{"first_name": "Ilir"}, {"first_name": "Arta"}]


def test_disclosure_headers() -> None:
    assert disclosure_headers(True) == {
        "Cache-Control": "no-store, no-cache",
        "Pragma": "no-cache",
        "X-PII-Access": "decrypt",
    }
    assert disclosure_headers(False) == {"X-PII-Access": "encrypted"}


def test_age_boundaries() -> None:
    assert age_on(date(2000, 6, 15), date(2020, 6, 14)) == 19
    assert age_on(date(2000, 6, 15), date(2020, 6, 15)) == 20
    assert [age_bucket(age) for age in (0, 20, 21, 35, 36, 55, 56, 90)] == [
        "0-20",
        "0-20",
        "21-35",
        "21-35",
        "36-55",
        "36-55",
        "55+",
        "55+",
    ]


def test_demographics_counts_ages_and_genders() -> None:
    today = date(2026, 1, 1)
    rows = [
        (CIPHER.encrypt_field("2010-01-01"), CIPHER.encrypt_field("M")),
        (CIPHER.encrypt_field("1995-06-30"), CIPHER.encrypt_field("F")),
        (CIPHER.encrypt_field("1960-02-02"), None),
        (None, CIPHER.encrypt_field("F")),
        (OTHER_CIPHER.encrypt_field("1990-01-01"), OTHER_CIPHER.encrypt_field("M")),
    ]
    summary = compute_demographics(rows, cipher=CIPHER, today=today)
    assert summary["total"] == 5
    assert summary["age"] == [
        {"name": "0-20", "value": 1},
        {"name": "21-35", "value": 1},
        {"name": "36-55", "value": 0},
        {"name": "55+", "value": 1},
    ]
    assert summary["gender"] == [
        {"name": "Male", "count": 1},
        {"name": "Female", "count": 2},
        {"name": "Unknown", "count": 2},
    ]
