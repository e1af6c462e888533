from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.permission_codes import PermissionCode
from tenantcore.core.errors import InvalidRequestError
from tenantcore.domain.context import RequestContext
from tenantcore.domain.models import Project
from tenantcore.services.mutations import AuditedMutationService, EntityPermissions


class ProjectService(AuditedMutationService[Project]):
    # Feature service built entirely on the mutation core.
    model = Project
    resource_type = "Project"
    permissions = EntityPermissions(
        create=PermissionCode.PROJECT_CREATE,
        read=PermissionCode.PROJECT_READ,
        update=PermissionCode.PROJECT_UPDATE,
        delete=PermissionCode.PROJECT_DELETE,
        list=PermissionCode.PROJECT_LIST,
        purge=PermissionCode.PROJECT_PURGE,
    )
    creatable_fields = frozenset({"name", "description", "code"})
    updatable_fields = frozenset({"name", "description", "code", "status"})
    sortable_fields = frozenset({"created_at", "updated_at", "status", "name"})

    async def _before_create(self, session: AsyncSession, ctx: RequestContext, values: dict[str, Any]) -> None:
        name = str(values.get("name") or "").strip()
        if not name:
            raise InvalidRequestError("name is required")
        values["name"] = name

    async def _before_update(
        self, session: AsyncSession, ctx: RequestContext, current: Project, values: dict[str, Any]
    ) -> None:
        if "name" in values and not str(values["name"] or "").strip():
            raise InvalidRequestError("name cannot be empty")
