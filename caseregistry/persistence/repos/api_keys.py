from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.domain.models import ApiKey, User, UserRole
from caseregistry.services.auth.api_keys import generate_api_key, normalize_role


@dataclass(frozen=True)
class IssuedKey:
    user_id: str
    key_id: str
    key_prefix: str
    raw_key: str
    roles: list[str]


async def issue_api_key(
    session: AsyncSession,
    *,
    roles: list[str],
    name: str,
    user_id: str | None = None,
    email: str | None = None,
    expires_at: datetime | None = None,
) -> IssuedKey:
    """Create (or reuse) a user, grant the roles, and attach a fresh key.

    Only the key hash is stored; the raw key exists solely in the return value.
    Does not commit.
    """
    canonical_roles = list(dict.fromkeys(normalize_role(role) for role in roles))
    resolved_user_id = user_id or uuid4().hex
    user = await session.get(User, resolved_user_id)
    if user is None:
        user = User(id=resolved_user_id, email=email, is_active=True)
        session.add(user)
    elif email and user.email != email:
        user.email = email
    # Flush the user row before inserting roles and keys to satisfy FK constraints.
    await session.flush()

    existing = await session.execute(select(UserRole.role).where(UserRole.user_id == user.id))
    granted = set(existing.scalars().all())
    for role in canonical_roles:
        if role not in granted:
            session.add(UserRole(user_id=user.id, role=role))

    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session.add(
        ApiKey(
            id=key_id,
            user_id=user.id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=name,
            expires_at=expires_at,
        )
    )
    await session.flush()
    return IssuedKey(
        user_id=user.id,
        key_id=key_id,
        key_prefix=key_prefix,
        raw_key=raw_key,
        roles=sorted(granted.union(canonical_roles)),
    )
