from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere (sqlite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Beneficiary identity attributes, each stored as an independently encrypted column.
PII_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "dob",
    "national_id",
    "phone",
    "email",
    "address",
    "gender",
    "municipality",
    "nationality",
    "ethnicity",
    "residence",
    "household_members",
)


ASSIGNABLE_ENTITY_TYPES: tuple[str, ...] = ("project", "subproject")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Store optional identity hints without making them required for bootstrap flows.
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Gate access for disabled users without deleting historical keys.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # Role names match the system vocabulary (e.g. "SuperAdmin", "Program Manager").
    role: Mapped[str] = mapped_column(String, nullable=False)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FormTemplate(Base):
    __tablename__ = "form_templates"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FormResponse(Base):
    __tablename__ = "form_responses"
    __table_args__ = (
        Index("ix_form_responses_entity", "entity_id", "entity_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    form_template_id: Mapped[str] = mapped_column(String, ForeignKey("form_templates.id"), index=True)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    # Principal subject id; dev-bypass principals have no users row.
    submitted_by: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # Resolved (or caller-supplied) beneficiary linkage; null when the form does not deduplicate.
    beneficiary_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("beneficiaries.id"), nullable=True, index=True
    )
    data_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Beneficiary(Base):
    __tablename__ = "beneficiaries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Random display label; never derived from PII.
    pseudonym: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    # Soft-delete flag; beneficiaries are never physically removed.
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    # Each column holds {"alg", "iv", "tag", "data"} or null when unknown.
    first_name_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    last_name_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    dob_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    national_id_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    phone_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    email_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    address_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    gender_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    municipality_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    nationality_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    ethnicity_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    residence_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    household_members_enc: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def encrypted_fields(self) -> dict[str, dict[str, Any] | None]:
        return {field: getattr(self, f"{field}_enc") for field in PII_FIELDS}


class BeneficiaryMatchKey(Base):
    __tablename__ = "beneficiary_match_keys"
    __table_args__ = (
        # The deduplication index: one beneficiary per (strategy, hashed identity).
        UniqueConstraint("key_type", "key_hash", name="uq_beneficiary_match_keys_type_hash"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    beneficiary_id: Mapped[str] = mapped_column(String, ForeignKey("beneficiaries.id"), index=True)
    key_type: Mapped[str] = mapped_column(String, nullable=False)
    # HMAC-SHA256 hex digest of the normalized composite value; never plaintext.
    key_hash: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BeneficiaryMapping(Base):
    __tablename__ = "beneficiary_mappings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    form_template_id: Mapped[str] = mapped_column(
        String, ForeignKey("form_templates.id"), unique=True, nullable=False
    )
    # {"fields": {attribute: dotted.path}, "strategies": [...]}
    mapping_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BeneficiaryAssignment(Base):
    __tablename__ = "beneficiary_assignments"
    __table_args__ = (
        UniqueConstraint(
            "beneficiary_id", "entity_id", "entity_type", name="uq_beneficiary_assignments_entity"
        ),
        Index("ix_beneficiary_assignments_entity", "entity_id", "entity_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    beneficiary_id: Mapped[str] = mapped_column(String, ForeignKey("beneficiaries.id"), index=True)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ServiceDelivery(Base):
    __tablename__ = "service_deliveries"
    __table_args__ = (
        Index("ix_service_deliveries_beneficiary_delivered", "beneficiary_id", "delivered_at"),
        Index("ix_service_deliveries_entity", "entity_id", "entity_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Service catalog is managed elsewhere; the id is stored as given.
    service_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    beneficiary_id: Mapped[str] = mapped_column(String, ForeignKey("beneficiaries.id"), nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    form_response_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("form_responses.id"), nullable=True, index=True
    )
    staff_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notes: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_action_timestamp", "action", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null only for unauthenticated failures.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
