from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (unit tests run on sqlite).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER PRIMARY KEY columns.
AutoIdType = BigInteger().with_variant(Integer(), "sqlite")


class TenantStatus(StrEnum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class RecordStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ResetMode(StrEnum):
    NEVER = "NEVER"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Base(DeclarativeBase):
    pass


class VersionedMixin:
    # Shared bookkeeping for mutable tenant-scoped entities.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default=RecordStatus.ACTIVE.value, nullable=False)
    # Optimistic concurrency token; updates must present the value they read.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Soft delete keeps the row for audit history; row security hides it from reads.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    # Lifecycle gate checked when building request contexts.
    status: Mapped[str] = mapped_column(String, default=TenantStatus.ACTIVE.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Permission(Base):
    __tablename__ = "permissions"

    # Global catalog entry; immutable apart from the activation flag.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, unique=True)
    category: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_roles_tenant_code"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    code: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Higher priority wins when reporting which grant decided an outcome.
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RoleParent(Base):
    __tablename__ = "role_parents"

    # Edges of the role hierarchy DAG; child inherits the parent's grants.
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"), primary_key=True)
    parent_role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RolePermission(Base):
    __tablename__ = "role_permissions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"), index=True)
    permission_id: Mapped[str] = mapped_column(String, ForeignKey("permissions.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_denied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Optional resource-level scope; both null means the grant applies to every resource.
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    # Grants are retired by timestamp, never deleted, to keep audit history.
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# At most one active grant row per (tenant, role, permission, resource scope).
Index(
    "uq_role_permissions_active_scope",
    RolePermission.tenant_id,
    RolePermission.role_id,
    RolePermission.permission_id,
    func.coalesce(RolePermission.resource_type, ""),
    func.coalesce(RolePermission.resource_id, ""),
    unique=True,
    postgresql_where=text("is_active AND deactivated_at IS NULL"),
    sqlite_where=text("is_active = 1 AND deactivated_at IS NULL"),
)


class Member(Base):
    __tablename__ = "members"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_members_tenant_user"),)

    # Tenant-scoped view of a user identity.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=RecordStatus.ACTIVE.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MemberRole(Base):
    __tablename__ = "member_roles"
    __table_args__ = (Index("ix_member_roles_tenant_member", "tenant_id", "member_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    member_id: Mapped[str] = mapped_column(String, ForeignKey("members.id"))
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"))
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_audit_events_tenant_resource", "tenant_id", "resource_type", "resource_id"),
    )

    # Append-only; application code never updates or deletes rows.
    id: Mapped[int] = mapped_column(AutoIdType, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    request_method: Mapped[str | None] = mapped_column(String, nullable=True)
    request_url: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)


class NumberSequence(VersionedMixin, Base):
    __tablename__ = "number_sequences"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_number_sequences_tenant_code"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    prefix: Mapped[str] = mapped_column(String, default="")
    suffix: Mapped[str | None] = mapped_column(String, nullable=True)
    padding_length: Mapped[int] = mapped_column(Integer, default=6, nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    min_value: Mapped[int] = mapped_column(BigInteger, default=1, nullable=False)
    # Null means unbounded.
    max_value: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    step: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    reset_mode: Mapped[str] = mapped_column(String, default=ResetMode.NEVER.value, nullable=False)
    reset_value: Mapped[int] = mapped_column(BigInteger, default=1, nullable=False)
    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    format_template: Mapped[str] = mapped_column(String, default="{prefix}-{number}", nullable=False)
    example_output: Mapped[str | None] = mapped_column(String, nullable=True)


class Project(VersionedMixin, Base):
    __tablename__ = "projects"
    __table_args__ = (Index("ix_projects_tenant_created", "tenant_id", "created_at"),)

    # Minimal feature entity consuming the mutation core.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(String, nullable=True)


# Tables guarded by row security, with whether they carry soft-delete columns.
TENANT_SCOPED_TABLES: dict[str, bool] = {
    Role.__tablename__: False,
    RoleParent.__tablename__: False,
    RolePermission.__tablename__: False,
    Member.__tablename__: False,
    MemberRole.__tablename__: False,
    NumberSequence.__tablename__: True,
    Project.__tablename__: True,
}
