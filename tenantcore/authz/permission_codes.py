# Generated from authz/catalog/rbac.catalog.yml by scripts/generate_permission_codes.py.
# Do not edit by hand; regenerate after changing the catalog.
from __future__ import annotations

from enum import StrEnum

from tenantcore.core.errors import UnknownPermissionError


CATALOG_VERSION = 3


class PermissionCode(StrEnum):
    AUDIT_EVENT_READ = "AuditEvent.read"
    MEMBER_READ = "Member.read"
    NUMBER_SEQUENCE_CREATE = "NumberSequence.create"
    NUMBER_SEQUENCE_DELETE = "NumberSequence.delete"
    NUMBER_SEQUENCE_GENERATE = "NumberSequence.generate"
    NUMBER_SEQUENCE_LIST = "NumberSequence.list"
    NUMBER_SEQUENCE_READ = "NumberSequence.read"
    NUMBER_SEQUENCE_RESET = "NumberSequence.reset"
    NUMBER_SEQUENCE_UPDATE = "NumberSequence.update"
    PROJECT_CREATE = "Project.create"
    PROJECT_DELETE = "Project.delete"
    PROJECT_LIST = "Project.list"
    PROJECT_PURGE = "Project.purge"
    PROJECT_READ = "Project.read"
    PROJECT_UPDATE = "Project.update"
    ROLE_ASSIGN = "Role.assign"
    ROLE_MANAGE = "Role.manage"
    ROLE_READ = "Role.read"


# Direct grants per role as declared in the catalog.
ROLE_GRANTS: dict[str, tuple[PermissionCode, ...]] = {
    "SYSTEM_ADMIN": (),
    "ADMIN": (PermissionCode.PROJECT_PURGE, PermissionCode.NUMBER_SEQUENCE_DELETE, PermissionCode.NUMBER_SEQUENCE_RESET, PermissionCode.ROLE_MANAGE, PermissionCode.ROLE_ASSIGN, PermissionCode.AUDIT_EVENT_READ,),
    "PROJECT_MANAGER": (PermissionCode.PROJECT_CREATE, PermissionCode.PROJECT_DELETE, PermissionCode.NUMBER_SEQUENCE_CREATE, PermissionCode.NUMBER_SEQUENCE_UPDATE, PermissionCode.ROLE_READ, PermissionCode.MEMBER_READ,),
    "WORKER": (PermissionCode.PROJECT_UPDATE, PermissionCode.NUMBER_SEQUENCE_GENERATE,),
    "DRIVER": (PermissionCode.NUMBER_SEQUENCE_GENERATE,),
    "VIEWER": (PermissionCode.PROJECT_READ, PermissionCode.PROJECT_LIST, PermissionCode.NUMBER_SEQUENCE_READ, PermissionCode.NUMBER_SEQUENCE_LIST,),
}


def parse_permission(value: str | PermissionCode) -> PermissionCode:
    # Closed set: anything outside the catalog is rejected.
    try:
        return PermissionCode(value)
    except ValueError as exc:
        raise UnknownPermissionError(f"Unknown permission code: {value}") from exc
