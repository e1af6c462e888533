from __future__ import annotations

from dataclasses import replace
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.rbac import effective_permissions
from tenantcore.core.clock import TimeProvider, utcnow
from tenantcore.core.errors import TenantInactiveError, UnauthenticatedError
from tenantcore.domain.context import (
    IdentityClaims,
    RequestContext,
    RequestMeta,
    build_request_context,
    normalize_correlation_id,
    normalize_roles,
    require_uuid,
    system_context,
)
from tenantcore.persistence.isolation import IsolationBridge
from tenantcore.persistence.repos import rbac as rbac_repo
from tenantcore.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)


class ContextResolver:
    """Loads what the pure context builder needs from the database.

    Roles come from the member's active assignments; roles carried in the
    claims can only narrow that set, never extend it.
    """

    def __init__(self, bridge: IsolationBridge, *, time_provider: TimeProvider | None = None) -> None:
        self._bridge = bridge
        self._now = time_provider or utcnow

    async def resolve(
        self,
        claims: IdentityClaims,
        *,
        request: RequestMeta | None = None,
        with_permissions: bool = False,
    ) -> RequestContext:
        # Validate identifiers before touching the database.
        user_id = require_uuid(claims.user_id, "actor id")
        tenant_id = require_uuid(claims.tenant_id, "tenant id")
        correlation_id = normalize_correlation_id(claims.correlation_id)

        async with self._bridge.session_factory() as session:
            scope = await tenants_repo.get_tenant_scope(session, tenant_id=tenant_id)
        if scope is None:
            logger.warning("context_tenant_unknown tenant_id=%s user_id=%s", tenant_id, user_id)
            raise UnauthenticatedError("Tenant could not be resolved")
        if not scope.is_active:
            raise TenantInactiveError()

        now = self._now()
        claimed = normalize_roles(claims.roles)

        async def load(session: AsyncSession) -> tuple[list[str], frozenset[str] | None]:
            assigned = await rbac_repo.load_member_role_codes(session, tenant_id=tenant_id, user_id=user_id, as_of=now)
            roles = [role for role in assigned if role in claimed] if claimed else assigned
            permissions = None
            if with_permissions:
                snapshot = await rbac_repo.load_grant_snapshot(session, tenant_id=tenant_id, as_of=now)
                permissions = snapshot.permissions_for(roles)
            return roles, permissions

        loader_ctx = system_context(tenant_id, purpose="context-resolution", correlation_id=correlation_id)
        roles, permissions = await self._bridge.with_isolated_transaction(loader_ctx, load)
        ctx = build_request_context(
            replace(claims, user_id=user_id, tenant_id=tenant_id, roles=tuple(roles), correlation_id=correlation_id),
            scope,
            request=request,
        )
        if permissions is not None:
            ctx = ctx.with_permissions(permissions)
        return ctx

    async def resolve_permissions(self, ctx: RequestContext) -> RequestContext:
        # Attach effective permissions to an existing context.
        async def load(session: AsyncSession) -> frozenset[str]:
            snapshot = await rbac_repo.load_grant_snapshot(session, tenant_id=ctx.tenant_id, as_of=self._now())
            return effective_permissions(ctx, snapshot)

        return ctx.with_permissions(await self._bridge.with_isolated_transaction(ctx, load))
