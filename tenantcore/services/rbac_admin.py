from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.permission_codes import PermissionCode, parse_permission
from tenantcore.authz.rbac import ResourceRef, effective_permissions
from tenantcore.core.errors import EntityNotFoundError, InvalidRequestError
from tenantcore.domain.context import RequestContext, normalize_roles, require_uuid
from tenantcore.domain.models import MemberRole, Permission, Role, RoleParent, RolePermission
from tenantcore.persistence.repos import rbac as rbac_repo
from tenantcore.services.audit import AuditAction
from tenantcore.services.operations import TenantOperationService


class RbacAdminService(TenantOperationService):
    """Grant administration for one tenant.

    Grant rows are retired by timestamp and replaced, never deleted, so at
    most one active row exists per role, permission and resource scope.
    """

    resource_type = "Role"

    async def _role(self, session: AsyncSession, ctx: RequestContext, role_code: str) -> Role:
        code = normalize_roles([role_code])
        role = await rbac_repo.get_role_by_code(session, tenant_id=ctx.tenant_id, code=code[0]) if code else None
        if role is None:
            raise EntityNotFoundError("Role", role_code)
        return role

    async def _permission(self, session: AsyncSession, permission: str | PermissionCode) -> Permission:
        code = parse_permission(permission)
        row = await rbac_repo.get_permission_by_code(session, code=code.value)
        if row is None or not row.is_active:
            raise EntityNotFoundError("Permission", code.value)
        return row

    async def _set_grant(
        self,
        ctx: RequestContext,
        role_code: str,
        permission: str | PermissionCode,
        *,
        resource: ResourceRef | None,
        deny: bool,
    ) -> RolePermission:
        async def work(session: AsyncSession) -> RolePermission:
            await self._gate.require(session, ctx, PermissionCode.ROLE_MANAGE, ResourceRef("Role", role_code))
            code = parse_permission(permission)
            if resource is not None and resource.id is not None and not resource.type:
                raise InvalidRequestError("resource id requires a resource type")
            role = await self._role(session, ctx, role_code)
            row = await self._permission(session, code)
            return await rbac_repo.replace_grant(
                session,
                tenant_id=ctx.tenant_id,
                role_id=role.id,
                permission_id=row.id,
                is_denied=deny,
                resource_type=resource.type if resource else None,
                resource_id=resource.id if resource else None,
                actor_id=ctx.actor_id,
                now=self._now(),
            )

        return await self._run(
            ctx,
            AuditAction.PERMISSION_DENIED if deny else AuditAction.PERMISSION_GRANTED,
            work,
            resource_id=role_code,
            metadata=_grant_metadata(permission, resource),
        )

    async def grant_permission(
        self,
        ctx: RequestContext,
        role_code: str,
        permission: str | PermissionCode,
        *,
        resource: ResourceRef | None = None,
    ) -> RolePermission:
        return await self._set_grant(ctx, role_code, permission, resource=resource, deny=False)

    async def deny_permission(
        self,
        ctx: RequestContext,
        role_code: str,
        permission: str | PermissionCode,
        *,
        resource: ResourceRef | None = None,
    ) -> RolePermission:
        return await self._set_grant(ctx, role_code, permission, resource=resource, deny=True)

    async def revoke_permission(
        self,
        ctx: RequestContext,
        role_code: str,
        permission: str | PermissionCode,
        *,
        resource: ResourceRef | None = None,
    ) -> int:
        # Retires the active grant or denial for exactly this scope.
        async def work(session: AsyncSession) -> int:
            await self._gate.require(session, ctx, PermissionCode.ROLE_MANAGE, ResourceRef("Role", role_code))
            code = parse_permission(permission)
            role = await self._role(session, ctx, role_code)
            row = await self._permission(session, code)
            return await rbac_repo.deactivate_grant(
                session,
                tenant_id=ctx.tenant_id,
                role_id=role.id,
                permission_id=row.id,
                resource_type=resource.type if resource else None,
                resource_id=resource.id if resource else None,
                now=self._now(),
            )

        return await self._run(
            ctx,
            AuditAction.PERMISSION_REVOKED,
            work,
            resource_id=role_code,
            metadata=_grant_metadata(permission, resource),
            result_metadata=lambda count: {"retired": count},
        )

    async def link_role_parent(self, ctx: RequestContext, role_code: str, parent_code: str) -> RoleParent:
        async def work(session: AsyncSession) -> RoleParent:
            await self._gate.require(session, ctx, PermissionCode.ROLE_MANAGE, ResourceRef("Role", role_code))
            role = await self._role(session, ctx, role_code)
            parent = await self._role(session, ctx, parent_code)
            return await rbac_repo.link_role_parent(
                session,
                tenant_id=ctx.tenant_id,
                role_id=role.id,
                parent_role_id=parent.id,
                now=self._now(),
            )

        return await self._run(
            ctx, AuditAction.ROLE_LINKED, work, resource_id=role_code, metadata={"parent_role": parent_code}
        )

    async def assign_role(
        self,
        ctx: RequestContext,
        user_id: str,
        role_code: str,
        *,
        primary: bool = False,
    ) -> MemberRole:
        member_user_id = require_uuid(user_id, "user id")

        async def work(session: AsyncSession) -> MemberRole:
            await self._gate.require(session, ctx, PermissionCode.ROLE_ASSIGN, ResourceRef("Role", role_code))
            role = await self._role(session, ctx, role_code)
            member = await rbac_repo.get_member_by_user(session, tenant_id=ctx.tenant_id, user_id=member_user_id)
            if member is None:
                raise EntityNotFoundError("Member", member_user_id)
            return await rbac_repo.assign_member_role(
                session,
                tenant_id=ctx.tenant_id,
                member_id=member.id,
                role_id=role.id,
                is_primary=primary,
                now=self._now(),
            )

        return await self._run(
            ctx,
            AuditAction.ROLE_ASSIGNED,
            work,
            resource_id=role_code,
            metadata={"user_id": member_user_id, "primary": primary},
        )

    async def revoke_role(self, ctx: RequestContext, user_id: str, role_code: str) -> int:
        member_user_id = require_uuid(user_id, "user id")

        async def work(session: AsyncSession) -> int:
            await self._gate.require(session, ctx, PermissionCode.ROLE_ASSIGN, ResourceRef("Role", role_code))
            role = await self._role(session, ctx, role_code)
            member = await rbac_repo.get_member_by_user(session, tenant_id=ctx.tenant_id, user_id=member_user_id)
            if member is None:
                raise EntityNotFoundError("Member", member_user_id)
            return await rbac_repo.deactivate_member_role(
                session, tenant_id=ctx.tenant_id, member_id=member.id, role_id=role.id, now=self._now()
            )

        return await self._run(
            ctx,
            AuditAction.ROLE_REVOKED,
            work,
            resource_id=role_code,
            metadata={"user_id": member_user_id},
            result_metadata=lambda count: {"retired": count},
        )

    async def effective_permissions(self, ctx: RequestContext) -> frozenset[str]:
        # Any context may list its own effective permissions.
        async def work(session: AsyncSession) -> frozenset[str]:
            snapshot = await self._gate.snapshot(session, ctx)
            return effective_permissions(ctx, snapshot)

        return await self._bridge.with_isolated_transaction(ctx, work)


def _grant_metadata(permission: str | PermissionCode, resource: ResourceRef | None) -> dict[str, str | None]:
    # Raw input is recorded so rejected codes still show up in the audit trail.
    return {
        "permission": str(permission),
        "scope_type": resource.type if resource else None,
        "scope_id": resource.id if resource else None,
    }
