from __future__ import annotations

import hashlib
import secrets
from uuid import uuid4


SUPER_ADMIN = "SuperAdmin"
SYSTEM_ADMIN = "System Administrator"
PROGRAM_MANAGER = "Program Manager"
SUB_PROJECT_MANAGER = "Sub-Project Manager"
FIELD_OPERATOR = "Field Operator"

# Closed role vocabulary; lookups are case-insensitive, storage uses the canonical spelling.
ROLES: tuple[str, ...] = (
    SUPER_ADMIN,
    SYSTEM_ADMIN,
    PROGRAM_MANAGER,
    SUB_PROJECT_MANAGER,
    FIELD_OPERATOR,
)
_CANONICAL_ROLES = {role.lower(): role for role in ROLES}


def normalize_role(role: str) -> str:
    # Map case/whitespace variants onto the canonical role name.
    canonical = _CANONICAL_ROLES.get(role.strip().lower())
    if canonical is None:
        raise ValueError(f"Unsupported role: {role}")
    return canonical


def parse_roles(raw: str) -> list[str]:
    # Parse a comma-delimited role header; unknown names are rejected rather than ignored.
    return list(dict.fromkeys(normalize_role(item) for item in raw.split(",") if item.strip()))


def roles_allow(*, roles: list[str] | tuple[str, ...], allowed: tuple[str, ...]) -> bool:
    return any(role in allowed for role in roles)


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"crk_{resolved_id}_{secret}"
    key_prefix = raw_key[:12]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)
