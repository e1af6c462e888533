from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.catalog import PermissionCatalog
from tenantcore.authz.hierarchy import RoleGraph
from tenantcore.authz.rbac import GrantRecord, GrantSnapshot, RoleRecord
from tenantcore.domain.models import (
    Member,
    MemberRole,
    Permission,
    RecordStatus,
    Role,
    RoleParent,
    RolePermission,
)
from tenantcore.persistence.guards import require_tenant_id, tenant_predicate


async def load_grant_snapshot(session: AsyncSession, *, tenant_id: str, as_of: datetime) -> GrantSnapshot:
    # Load roles, hierarchy edges and grant rows for one tenant in three scoped queries.
    require_tenant_id(tenant_id)
    roles = (await session.execute(select(Role).where(tenant_predicate(Role, tenant_id)))).scalars().all()
    codes_by_id = {role.id: role.code for role in roles}

    edges_result = await session.execute(
        select(RoleParent.role_id, RoleParent.parent_role_id).where(tenant_predicate(RoleParent, tenant_id))
    )
    edges = [
        (codes_by_id[child], codes_by_id[parent])
        for child, parent in edges_result.all()
        if child in codes_by_id and parent in codes_by_id
    ]

    grants_result = await session.execute(
        select(RolePermission, Permission.code)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(
            tenant_predicate(RolePermission, tenant_id),
            RolePermission.is_active.is_(True),
            RolePermission.deactivated_at.is_(None),
            Permission.is_active.is_(True),
        )
    )
    grants = [
        GrantRecord(
            role_code=codes_by_id[row.role_id],
            permission_code=code,
            is_denied=row.is_denied,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            is_active=row.is_active,
            effective_from=row.effective_from,
            deactivated_at=row.deactivated_at,
        )
        for row, code in grants_result.all()
        if row.role_id in codes_by_id
    ]
    return GrantSnapshot(
        tenant_id,
        [RoleRecord(code=role.code, is_active=role.is_active, priority=role.priority) for role in roles],
        grants,
        edges=edges,
        as_of=as_of,
    )


async def load_member_role_codes(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    as_of: datetime,
) -> list[str]:
    # Active assignments for an active member, primary role first.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Role.code)
        .join(MemberRole, MemberRole.role_id == Role.id)
        .join(Member, Member.id == MemberRole.member_id)
        .where(
            tenant_predicate(MemberRole, tenant_id),
            Member.tenant_id == tenant_id,
            Role.tenant_id == tenant_id,
            Member.user_id == user_id,
            Member.status == RecordStatus.ACTIVE.value,
            Role.is_active.is_(True),
            MemberRole.effective_from <= as_of,
            or_(MemberRole.deactivated_at.is_(None), MemberRole.deactivated_at > as_of),
        )
        .order_by(
            MemberRole.is_primary.desc(),
            MemberRole.is_default.desc(),
            Role.priority.desc(),
            Role.code.asc(),
        )
    )
    codes: list[str] = []
    for code in result.scalars().all():
        if code not in codes:
            codes.append(code)
    return codes


async def get_role_by_code(session: AsyncSession, *, tenant_id: str, code: str) -> Role | None:
    require_tenant_id(tenant_id)
    result = await session.execute(select(Role).where(tenant_predicate(Role, tenant_id), Role.code == code))
    return result.scalar_one_or_none()


async def get_permission_by_code(session: AsyncSession, *, code: str) -> Permission | None:
    # Permissions are a global catalog; no tenant predicate applies.
    result = await session.execute(select(Permission).where(Permission.code == code))
    return result.scalar_one_or_none()


async def get_member_by_user(session: AsyncSession, *, tenant_id: str, user_id: str) -> Member | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Member).where(tenant_predicate(Member, tenant_id), Member.user_id == user_id)
    )
    return result.scalar_one_or_none()


def _scope_filter(resource_type: str | None, resource_id: str | None) -> object:
    type_clause = (
        RolePermission.resource_type.is_(None)
        if resource_type is None
        else RolePermission.resource_type == resource_type
    )
    id_clause = (
        RolePermission.resource_id.is_(None) if resource_id is None else RolePermission.resource_id == resource_id
    )
    return and_(type_clause, id_clause)


async def deactivate_grant(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_id: str,
    permission_id: str,
    resource_type: str | None,
    resource_id: str | None,
    now: datetime,
) -> int:
    # Retire the active row for this scope by timestamp; rows are never deleted.
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(RolePermission)
        .where(
            tenant_predicate(RolePermission, tenant_id),
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
            RolePermission.is_active.is_(True),
            RolePermission.deactivated_at.is_(None),
            _scope_filter(resource_type, resource_id),
        )
        .values(is_active=False, deactivated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def replace_grant(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_id: str,
    permission_id: str,
    is_denied: bool,
    resource_type: str | None,
    resource_id: str | None,
    actor_id: str | None,
    now: datetime,
) -> RolePermission:
    # Keep at most one active row per (tenant, role, permission, scope).
    await deactivate_grant(
        session,
        tenant_id=tenant_id,
        role_id=role_id,
        permission_id=permission_id,
        resource_type=resource_type,
        resource_id=resource_id,
        now=now,
    )
    row = RolePermission(
        id=str(uuid4()),
        tenant_id=tenant_id,
        role_id=role_id,
        permission_id=permission_id,
        is_active=True,
        is_denied=is_denied,
        resource_type=resource_type,
        resource_id=resource_id,
        effective_from=now,
        deactivated_at=None,
        created_by_actor_id=actor_id,
        created_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def link_role_parent(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_id: str,
    parent_role_id: str,
    now: datetime,
) -> RoleParent:
    # Reject the edge when it would make the hierarchy cyclic.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RoleParent.role_id, RoleParent.parent_role_id).where(tenant_predicate(RoleParent, tenant_id))
    )
    graph = RoleGraph.from_edges(result.all(), roles=(role_id, parent_role_id))
    graph.with_edge(role_id, parent_role_id)
    edge = RoleParent(role_id=role_id, parent_role_id=parent_role_id, tenant_id=tenant_id, created_at=now)
    session.add(edge)
    await session.flush()
    return edge


async def assign_member_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    member_id: str,
    role_id: str,
    is_primary: bool,
    now: datetime,
) -> MemberRole:
    require_tenant_id(tenant_id)
    if is_primary:
        # Only one primary assignment stays active per member.
        await session.execute(
            update(MemberRole)
            .where(
                tenant_predicate(MemberRole, tenant_id),
                MemberRole.member_id == member_id,
                MemberRole.deactivated_at.is_(None),
            )
            .values(is_primary=False)
            .execution_options(synchronize_session=False)
        )
    await deactivate_member_role(session, tenant_id=tenant_id, member_id=member_id, role_id=role_id, now=now)
    assignment = MemberRole(
        id=str(uuid4()),
        tenant_id=tenant_id,
        member_id=member_id,
        role_id=role_id,
        is_primary=is_primary,
        is_default=False,
        effective_from=now,
        deactivated_at=None,
        created_at=now,
    )
    session.add(assignment)
    await session.flush()
    return assignment


async def deactivate_member_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    member_id: str,
    role_id: str,
    now: datetime,
) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(MemberRole)
        .where(
            tenant_predicate(MemberRole, tenant_id),
            MemberRole.member_id == member_id,
            MemberRole.role_id == role_id,
            MemberRole.deactivated_at.is_(None),
        )
        .values(deactivated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def ensure_permissions(session: AsyncSession, catalog: PermissionCatalog) -> dict[str, Permission]:
    # Upsert the global permission catalog; codes missing from the catalog are deactivated.
    existing = {row.code: row for row in (await session.execute(select(Permission))).scalars().all()}
    for code, definition in catalog.permissions.items():
        row = existing.get(code)
        if row is None:
            row = Permission(id=str(uuid4()), code=code, category=definition.category, is_active=True)
            session.add(row)
            existing[code] = row
        else:
            row.category = definition.category
            row.is_active = True
    for code, row in existing.items():
        if code not in catalog.permissions:
            row.is_active = False
    await session.flush()
    return existing


async def ensure_tenant_roles(
    session: AsyncSession,
    *,
    tenant_id: str,
    catalog: PermissionCatalog,
    permissions: dict[str, Permission],
    actor_id: str | None,
    now: datetime,
) -> dict[str, Role]:
    # Seed catalog roles, hierarchy and direct grants for a tenant; safe to re-run.
    require_tenant_id(tenant_id)
    roles = {
        role.code: role
        for role in (await session.execute(select(Role).where(tenant_predicate(Role, tenant_id)))).scalars().all()
    }
    for definition in catalog.tenant_roles:
        role = roles.get(definition.code)
        if role is None:
            role = Role(
                id=str(uuid4()),
                tenant_id=tenant_id,
                code=definition.code,
                name=definition.name,
                is_active=True,
                priority=definition.priority,
                created_at=now,
                updated_at=now,
            )
            session.add(role)
            roles[definition.code] = role
        else:
            role.name = definition.name
            role.priority = definition.priority
    await session.flush()

    existing_edges = {
        (child, parent)
        for child, parent in (
            await session.execute(
                select(RoleParent.role_id, RoleParent.parent_role_id).where(tenant_predicate(RoleParent, tenant_id))
            )
        ).all()
    }
    for definition in catalog.tenant_roles:
        for parent_code in definition.inherits:
            if parent_code not in roles:
                continue
            edge = (roles[definition.code].id, roles[parent_code].id)
            if edge not in existing_edges:
                await link_role_parent(session, tenant_id=tenant_id, role_id=edge[0], parent_role_id=edge[1], now=now)
                existing_edges.add(edge)

    active_grants = {
        (row.role_id, row.permission_id)
        for row in (
            await session.execute(
                select(RolePermission).where(
                    tenant_predicate(RolePermission, tenant_id),
                    RolePermission.is_active.is_(True),
                    RolePermission.deactivated_at.is_(None),
                    RolePermission.resource_type.is_(None),
                    RolePermission.resource_id.is_(None),
                )
            )
        ).scalars().all()
    }
    for definition in catalog.tenant_roles:
        for code in catalog.grants.get(definition.code, ()):
            key = (roles[definition.code].id, permissions[code].id)
            if key in active_grants:
                continue
            session.add(
                RolePermission(
                    id=str(uuid4()),
                    tenant_id=tenant_id,
                    role_id=key[0],
                    permission_id=key[1],
                    is_active=True,
                    is_denied=False,
                    effective_from=now,
                    created_by_actor_id=actor_id,
                    created_at=now,
                )
            )
            active_grants.add(key)
    await session.flush()
    return roles


async def ensure_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    email: str | None,
    display_name: str | None,
    now: datetime,
) -> Member:
    member = await get_member_by_user(session, tenant_id=tenant_id, user_id=user_id)
    if member is not None:
        return member
    member = Member(
        id=str(uuid4()),
        tenant_id=tenant_id,
        user_id=user_id,
        email=email,
        display_name=display_name,
        status=RecordStatus.ACTIVE.value,
        created_at=now,
    )
    session.add(member)
    await session.flush()
    return member
