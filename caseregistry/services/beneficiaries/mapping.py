from __future__ import annotations

from typing import Any

from caseregistry.core.config import MATCH_STRATEGIES
from caseregistry.core.errors import MappingValidationError


# Mapping keys (as authored by form designers) -> stored PII attribute.
IDENTITY_ATTRIBUTES: dict[str, str] = {
    "firstName": "first_name",
    "lastName": "last_name",
    "dob": "dob",
    "nationalId": "national_id",
    "phone": "phone",
    "email": "email",
    "address": "address",
    "gender": "gender",
    "municipality": "municipality",
    "nationality": "nationality",
    "ethnicity": "ethnicity",
    "residence": "residence",
    "householdMembers": "household_members",
}


def filter_strategies(raw: Any) -> list[str]:
    # Absent strategies enable every recognized one; unknown names are dropped, not rejected.
    if raw is None:
        return list(MATCH_STRATEGIES)
    if not isinstance(raw, list):
        raise MappingValidationError("mapping.strategies must be an array")
    return list(dict.fromkeys(item for item in raw if isinstance(item, str) and item in MATCH_STRATEGIES))


def validate_mapping(payload: Any) -> dict[str, Any]:
    """Return the canonical mapping document for storage.

    Only the shape is checked: ``fields`` must be an object of attribute to
    dotted-path strings and ``strategies`` a list. Paths are not verified
    against the form template.
    """
    if not isinstance(payload, dict):
        raise MappingValidationError("mapping must be an object")
    fields = payload.get("fields")
    if not isinstance(fields, dict):
        raise MappingValidationError("mapping.fields must be an object")
    cleaned: dict[str, str] = {}
    for key, path in fields.items():
        if path is None:
            continue
        if not isinstance(path, str):
            raise MappingValidationError(f"mapping.fields.{key} must be a string path")
        if path.strip():
            cleaned[str(key)] = path.strip()
    return {"fields": cleaned, "strategies": filter_strategies(payload.get("strategies"))}


def enabled_strategies(mapping_json: dict[str, Any] | None) -> list[str]:
    # Read-side counterpart of validate_mapping for rows written before validation existed.
    if not isinstance(mapping_json, dict):
        return list(MATCH_STRATEGIES)
    raw = mapping_json.get("strategies")
    if not isinstance(raw, list):
        return list(MATCH_STRATEGIES)
    return [item for item in raw if isinstance(item, str) and item in MATCH_STRATEGIES]


def mapped_fields(mapping_json: dict[str, Any] | None) -> dict[str, str]:
    if not isinstance(mapping_json, dict):
        return {}
    fields = mapping_json.get("fields")
    if not isinstance(fields, dict):
        return {}
    return {str(key): value for key, value in fields.items() if isinstance(value, str) and value}
