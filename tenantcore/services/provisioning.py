from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.catalog import PermissionCatalog, load_catalog
from tenantcore.core.clock import TimeProvider, utcnow
from tenantcore.core.errors import DuplicateEntityError, EntityNotFoundError, InvalidRequestError
from tenantcore.domain.context import RequestContext, require_uuid, system_context
from tenantcore.domain.models import TenantStatus
from tenantcore.persistence.isolation import IsolationBridge
from tenantcore.persistence.repos import rbac as rbac_repo
from tenantcore.persistence.repos import tenants as tenants_repo
from tenantcore.services.audit import AuditAction, AuditOutcome, AuditRecorder


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedTenant:
    tenant_id: str
    slug: str
    admin_user_id: str
    roles: tuple[str, ...]


class TenantProvisioner:
    """Creates tenants and keeps their RBAC tables in line with the catalog.

    Runs under a system context: there is no request actor yet when a tenant
    is created, and catalog sync must not depend on existing grants.
    """

    def __init__(
        self,
        bridge: IsolationBridge,
        *,
        audit: AuditRecorder | None = None,
        catalog: PermissionCatalog | None = None,
        admin_role: str = "ADMIN",
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._bridge = bridge
        self._audit = audit
        self._catalog = catalog
        self._admin_role = admin_role
        self._now = time_provider or utcnow

    def _load_catalog(self) -> PermissionCatalog:
        if self._catalog is None:
            self._catalog = load_catalog()
        return self._catalog

    async def provision(
        self,
        *,
        name: str,
        slug: str,
        admin_user_id: str,
        admin_email: str | None = None,
        admin_display_name: str | None = None,
        tenant_id: str | None = None,
    ) -> ProvisionedTenant:
        if not name.strip() or not slug.strip():
            raise InvalidRequestError("name and slug are required")
        admin_id = require_uuid(admin_user_id, "admin user id")
        tenant_id = tenant_id or str(uuid4())
        catalog = self._load_catalog()
        if self._admin_role not in catalog.roles:
            raise InvalidRequestError(f"Admin role {self._admin_role} is not in the catalog")

        # Tenants are a global table outside row security.
        async with self._bridge.session_factory() as session:
            async with session.begin():
                if await tenants_repo.get_tenant_by_slug(session, slug=slug) is not None:
                    raise DuplicateEntityError(f"Tenant slug {slug} already exists")
                await tenants_repo.create_tenant(session, tenant_id=tenant_id, name=name, slug=slug, now=self._now())

        ctx = system_context(tenant_id, purpose="tenant-provisioning")

        async def work(session: AsyncSession) -> tuple[str, ...]:
            now = self._now()
            roles = await self._sync(session, ctx, catalog)
            member = await rbac_repo.ensure_member(
                session,
                tenant_id=tenant_id,
                user_id=admin_id,
                email=admin_email,
                display_name=admin_display_name,
                now=now,
            )
            await rbac_repo.assign_member_role(
                session,
                tenant_id=tenant_id,
                member_id=member.id,
                role_id=roles[self._admin_role].id,
                is_primary=True,
                now=now,
            )
            return tuple(roles)

        roles = await self._bridge.with_isolated_transaction(ctx, work)
        logger.info("tenant_provisioned tenant_id=%s slug=%s catalog_version=%s", tenant_id, slug, catalog.version)
        if self._audit is not None:
            await self._audit.record(
                ctx,
                action=AuditAction.TENANT_PROVISIONED,
                outcome=AuditOutcome.SUCCESS,
                resource_type="Tenant",
                resource_id=tenant_id,
                metadata={"slug": slug, "catalog_version": catalog.version, "admin_user_id": admin_id},
            )
        return ProvisionedTenant(tenant_id=tenant_id, slug=slug, admin_user_id=admin_id, roles=roles)

    async def _sync(self, session: AsyncSession, ctx: RequestContext, catalog: PermissionCatalog):
        permissions = await rbac_repo.ensure_permissions(session, catalog)
        return await rbac_repo.ensure_tenant_roles(
            session,
            tenant_id=ctx.tenant_id,
            catalog=catalog,
            permissions=permissions,
            actor_id=ctx.actor_id,
            now=self._now(),
        )

    async def sync_catalog(self, tenant_id: str) -> tuple[str, ...]:
        # Re-apply catalog roles, hierarchy and grants to an existing tenant.
        catalog = self._load_catalog()
        async with self._bridge.session_factory() as session:
            scope = await tenants_repo.get_tenant_scope(session, tenant_id=tenant_id)
        if scope is None:
            raise EntityNotFoundError("Tenant", tenant_id)
        ctx = system_context(tenant_id, purpose="catalog-sync")

        async def work(session: AsyncSession) -> tuple[str, ...]:
            return tuple(await self._sync(session, ctx, catalog))

        roles = await self._bridge.with_isolated_transaction(ctx, work)
        logger.info("tenant_catalog_synced tenant_id=%s catalog_version=%s", tenant_id, catalog.version)
        return roles

    async def add_member(
        self,
        tenant_id: str,
        *,
        user_id: str,
        roles: tuple[str, ...],
        email: str | None = None,
        display_name: str | None = None,
    ) -> None:
        # Bootstrap helper: first role listed becomes the primary assignment.
        member_user_id = require_uuid(user_id, "user id")
        ctx = system_context(tenant_id, purpose="member-bootstrap")

        async def work(session: AsyncSession) -> None:
            now = self._now()
            member = await rbac_repo.ensure_member(
                session, tenant_id=tenant_id, user_id=member_user_id, email=email, display_name=display_name, now=now
            )
            for index, code in enumerate(roles):
                role = await rbac_repo.get_role_by_code(session, tenant_id=tenant_id, code=code)
                if role is None:
                    raise EntityNotFoundError("Role", code)
                await rbac_repo.assign_member_role(
                    session, tenant_id=tenant_id, member_id=member.id, role_id=role.id, is_primary=index == 0, now=now
                )

        await self._bridge.with_isolated_transaction(ctx, work)

    async def set_status(self, tenant_id: str, status: TenantStatus) -> None:
        async with self._bridge.session_factory() as session:
            async with session.begin():
                found = await tenants_repo.set_tenant_status(session, tenant_id=tenant_id, status=status, now=self._now())
        if not found:
            raise EntityNotFoundError("Tenant", tenant_id)
        logger.info("tenant_status_changed tenant_id=%s status=%s", tenant_id, status.value)
