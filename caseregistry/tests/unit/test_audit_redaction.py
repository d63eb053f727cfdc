from __future__ import annotations

from caseregistry.services.audit import sanitize_details


def test_audit_redacts_identity_values_and_secrets() -> None:
    payload = {
        "first_name": "Ilir",
        "national_id": "A123",
        "phone": "+38344123456",
        "nested": {"authorization": "Bearer abc", "dob": "1990-05-02"},
        "items": [{"email": "x@example.org", "count": 2}],
        "beneficiary_id": "b-1",
    }
    sanitized = sanitize_details(payload)
    assert sanitized["first_name"] == "[REDACTED]"
    assert sanitized["national_id"] == "[REDACTED]"
    assert sanitized["phone"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["dob"] == "[REDACTED]"
    assert sanitized["items"][0]["email"] == "[REDACTED]"
    assert sanitized["items"][0]["count"] == 2
    assert sanitized["beneficiary_id"] == "b-1"


def test_audit_keeps_field_name_lists() -> None:
    # Disclosure rows record which attributes were read, never their values.
    sanitized = sanitize_details({"fields": ["first_name", "dob"], "form_template_id": "t-1"})
    assert sanitized == {"fields": ["first_name", "dob"], "form_template_id": "t-1"}
