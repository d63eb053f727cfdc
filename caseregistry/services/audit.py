from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from caseregistry.domain.models import AuditLog
from caseregistry.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Action vocabulary persisted in audit_logs.action.
PII_READ = "BENEFICIARY_PII_READ"
PII_LIST_READ = "BENEFICIARY_PII_LIST_READ"
PII_AGGREGATE = "BENEFICIARY_PII_AGGREGATE"
BENEFICIARY_CREATE = "BENEFICIARY_CREATE"
BENEFICIARY_UPDATE = "BENEFICIARY_UPDATE"
BENEFICIARY_STATUS_UPDATE = "BENEFICIARY_STATUS_UPDATE"
BENEFICIARY_DELETE = "BENEFICIARY_DELETE"
BENEFICIARY_ASSIGN = "BENEFICIARY_ASSIGN"
BENEFICIARY_UNASSIGN = "BENEFICIARY_UNASSIGN"
MAPPING_CREATE = "BENEFICIARY_MAPPING_CREATE"
MAPPING_UPDATE = "BENEFICIARY_MAPPING_UPDATE"
FORM_RESPONSE_SUBMIT = "FORM_RESPONSE_SUBMIT"
AUTH_FAILED = "AUTH_FAILED"
RBAC_FORBIDDEN = "RBAC_FORBIDDEN"

# Audit details must never carry identity values, even by accident.
_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "authorization",
    "token",
    "secret",
    "password",
    "name",
    "dob",
    "national",
    "phone",
    "email",
    "address",
    "pii",
]
_SAFE_KEYS = {"fields", "field_names", "form_template_id", "entity_type"}
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    if lowered in _SAFE_KEYS:
        return False
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_details(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def _build_row(
    *,
    user_id: str | None,
    action: str,
    description: str,
    details: dict[str, Any] | None,
    request: Request | None,
    occurred_at: datetime | None,
) -> AuditLog:
    payload = sanitize_details(details or {})
    context = {key: value for key, value in get_request_context(request).items() if value is not None}
    if context:
        payload["request"] = context
    return AuditLog(
        id=uuid4().hex,
        user_id=user_id,
        action=action,
        description=description,
        details=payload,
        timestamp=occurred_at or datetime.now(timezone.utc),
    )


async def record_audit(
    *,
    user_id: str | None,
    action: str,
    description: str,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
) -> None:
    """Append one audit row; failures are logged and never reach the caller.

    With no session the row is written and committed on a dedicated session, so
    the caller's transaction neither waits for nor depends on the audit insert.
    With a session the row joins the caller's unit of work and commits with it.
    """
    if session is None:
        try:
            row = _build_row(
                user_id=user_id,
                action=action,
                description=description,
                details=details,
                request=request,
                occurred_at=occurred_at,
            )
            async with SessionLocal() as audit_session:
                audit_session.add(row)
                await audit_session.commit()
        except Exception as exc:  # noqa: BLE001 - audit failures are non-fatal
            logger.warning(
                "audit_log_write_failed action=%s user_id=%s",
                action,
                user_id,
                exc_info=exc,
            )
        return

    try:
        session.add(
            _build_row(
                user_id=user_id,
                action=action,
                description=description,
                details=details,
                request=request,
                occurred_at=occurred_at,
            )
        )
    except Exception as exc:  # noqa: BLE001 - audit failures are non-fatal
        logger.warning(
            "audit_log_write_failed action=%s user_id=%s",
            action,
            user_id,
            exc_info=exc,
        )
