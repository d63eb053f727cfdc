from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseregistry.core.config import get_settings
from caseregistry.domain.models import ApiKey, User, UserRole
from caseregistry.persistence.db import get_session
from caseregistry.services.audit import AUTH_FAILED, RBAC_FORBIDDEN, record_audit
from caseregistry.services.auth.api_keys import hash_api_key, normalize_role, parse_roles, roles_allow


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    subject_id: str
    roles: list[str]
    api_key_id: str
    auth_method: str = "api_key"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


async def _audit_auth_failure(request: Request, exc: HTTPException, *, user_id: str | None = None) -> None:
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    await record_audit(
        user_id=user_id,
        action=AUTH_FAILED,
        description=str(detail.get("message") or "Authentication failed"),
        details={**_request_metadata(request), "error_code": detail.get("code")},
        request=request,
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Accept X-User-Id + X-Roles only when explicitly enabled for local dev.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise _auth_error("X-User-Id header is required in dev bypass mode")
    try:
        roles = parse_roles(request.headers.get("X-Roles", ""))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(subject_id=user_id, roles=roles, api_key_id="dev-bypass", auth_method="dev_bypass")


async def _principal_from_api_key(db: AsyncSession, raw_key: str) -> Principal:
    key_hash = hash_api_key(raw_key)
    try:
        result = await db.execute(
            select(ApiKey, User)
            .join(User, ApiKey.user_id == User.id)
            .where(ApiKey.key_hash == key_hash)
        )
        row = result.first()
        if row is None:
            raise _auth_error("Invalid API key")
        api_key, user = row
        role_rows = await db.execute(select(UserRole.role).where(UserRole.user_id == user.id))
        stored_roles = list(role_rows.scalars().all())
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    if api_key.revoked_at is not None or not user.is_active:
        raise _auth_error("API key is revoked or inactive")
    expires_at = api_key.expires_at
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            raise _auth_error("API key expired")

    roles: list[str] = []
    for role in stored_roles:
        try:
            roles.append(normalize_role(role))
        except ValueError:
            # Unknown stored roles grant nothing.
            continue
    return Principal(subject_id=user.id, roles=roles, api_key_id=api_key.id, auth_method="api_key")


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Only failures are audited; successful authentication is not a PII event.
    settings = get_settings()
    try:
        bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
        if bearer_token and settings.auth_enabled:
            return await _principal_from_api_key(db, bearer_token)
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")
    except HTTPException as exc:
        if exc.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_400_BAD_REQUEST):
            await _audit_auth_failure(request, exc)
        raise


def require_roles(*allowed: str):
    # Dependency factory enforcing that the caller holds at least one allowed role.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not allowed or roles_allow(roles=principal.roles, allowed=allowed):
            return principal
        await record_audit(
            user_id=principal.subject_id,
            action=RBAC_FORBIDDEN,
            description=f"Denied {request.method} {request.url.path}",
            details={**_request_metadata(request), "required_roles": list(allowed), "roles": principal.roles},
            request=request,
        )
        raise _forbidden_error("Insufficient role for this operation")

    return _dependency
