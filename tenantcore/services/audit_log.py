from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.permission_codes import PermissionCode
from tenantcore.authz.rbac import ResourceRef
from tenantcore.core.errors import EntityNotFoundError, InvalidRequestError
from tenantcore.domain.context import RequestContext
from tenantcore.domain.models import AuditEvent
from tenantcore.persistence.repos import audit as audit_repo
from tenantcore.persistence.repos.audit import AuditEventFilter
from tenantcore.services.audit import AuditAction
from tenantcore.services.operations import TenantOperationService


class AuditLogService(TenantOperationService):
    # Compliance reads over the tenant's own audit trail.
    resource_type = "AuditEvent"

    async def list_events(
        self,
        ctx: RequestContext,
        criteria: AuditEventFilter | None = None,
        *,
        page: int = 1,
        limit: int | None = None,
        **filters: object,
    ) -> list[AuditEvent]:
        resolved_limit = limit if limit is not None else self._settings.list_default_page_size
        resolved_limit = min(max(1, int(resolved_limit)), self._settings.list_max_page_size)
        offset = (max(1, int(page)) - 1) * resolved_limit

        async def work(session: AsyncSession) -> list[AuditEvent]:
            await self._gate.require(session, ctx, PermissionCode.AUDIT_EVENT_READ, ResourceRef(self.resource_type))
            return await audit_repo.list_events(
                session,
                tenant_id=ctx.tenant_id,
                criteria=_criteria(criteria, filters),
                offset=offset,
                limit=resolved_limit,
            )

        return await self._run(
            ctx,
            AuditAction.LIST,
            work,
            metadata={"page": page, "limit": resolved_limit, "filters": sorted(filters)},
        )

    async def get_event(self, ctx: RequestContext, event_id: int) -> AuditEvent:
        async def work(session: AsyncSession) -> AuditEvent:
            await self._gate.require(
                session, ctx, PermissionCode.AUDIT_EVENT_READ, ResourceRef(self.resource_type, str(event_id))
            )
            event = await audit_repo.get_event(session, tenant_id=ctx.tenant_id, event_id=event_id)
            if event is None:
                raise EntityNotFoundError(self.resource_type, str(event_id))
            return event

        return await self._run(ctx, AuditAction.READ, work, resource_id=str(event_id))


def _criteria(criteria: AuditEventFilter | None, filters: dict[str, object]) -> AuditEventFilter | None:
    # Keyword filters are shorthand for an AuditEventFilter.
    if not filters:
        return criteria
    try:
        return AuditEventFilter(**filters)
    except TypeError as exc:
        raise InvalidRequestError(f"Unsupported audit filter: {', '.join(sorted(filters))}") from exc
