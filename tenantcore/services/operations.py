from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.permission_codes import PermissionCode
from tenantcore.authz.rbac import AuthorizationDecision, GrantSnapshot, ResourceRef, authorize
from tenantcore.core.clock import TimeProvider, utcnow
from tenantcore.core.config import Settings, get_settings
from tenantcore.core.errors import AuthorizationDeniedError
from tenantcore.domain.context import RequestContext
from tenantcore.persistence.isolation import IsolationBridge
from tenantcore.persistence.repos import rbac as rbac_repo
from tenantcore.services.audit import AuditAction, AuditOutcome, AuditRecorder


logger = logging.getLogger(__name__)

T = TypeVar("T")
GrantLoader = Callable[..., Awaitable[GrantSnapshot]]
_READ_ACTIONS = {AuditAction.READ, AuditAction.LIST}


class AuthorizationGate:
    """RBAC gate evaluated inside the caller's isolated transaction.

    Grant data is loaded fresh for every check, scoped to the context's tenant,
    so grant changes take effect on the next operation.
    """

    def __init__(self, *, loader: GrantLoader | None = None, time_provider: TimeProvider | None = None) -> None:
        self._loader = loader or rbac_repo.load_grant_snapshot
        self._now = time_provider or utcnow

    async def snapshot(self, session: AsyncSession, ctx: RequestContext) -> GrantSnapshot:
        return await self._loader(session, tenant_id=ctx.tenant_id, as_of=self._now())

    async def check(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        permission: PermissionCode,
        resource: ResourceRef | None = None,
    ) -> AuthorizationDecision:
        if ctx.is_system:
            # System contexts skip grant loading; authorize() still validates the code.
            empty = GrantSnapshot(ctx.tenant_id, [], [], as_of=self._now())
            return authorize(ctx, permission, resource, snapshot=empty)
        snapshot = await self.snapshot(session, ctx)
        return authorize(ctx, permission, resource, snapshot=snapshot)

    async def require(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        permission: PermissionCode,
        resource: ResourceRef | None = None,
    ) -> AuthorizationDecision:
        decision = await self.check(session, ctx, permission, resource)
        if not decision.allowed:
            # The deciding rule stays in logs; callers only learn the permission was refused.
            logger.warning(
                "authorization_denied tenant_id=%s user_id=%s permission=%s reason=%s correlation_id=%s",
                ctx.tenant_id,
                ctx.actor_id,
                decision.permission,
                decision.reason,
                ctx.correlation_id,
            )
            raise AuthorizationDeniedError(permission=decision.permission)
        return decision


class TenantOperationService:
    """Shared plumbing for services that run audited, isolated operations."""

    resource_type: str = ""

    def __init__(
        self,
        *,
        bridge: IsolationBridge,
        audit: AuditRecorder | None = None,
        gate: AuthorizationGate | None = None,
        settings: Settings | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._bridge = bridge
        self._settings = settings or get_settings()
        self._now = time_provider or utcnow
        self._audit = audit
        self._gate = gate or AuthorizationGate(time_provider=self._now)

    async def _run(
        self,
        ctx: RequestContext,
        action: AuditAction,
        work: Callable[[AsyncSession], Awaitable[T]],
        *,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        result_metadata: Callable[[T], dict[str, Any]] | None = None,
        isolation_level: str | None = None,
    ) -> T:
        # Audit runs after commit or rollback and never changes the outcome.
        try:
            result = await self._bridge.with_isolated_transaction(ctx, work, isolation_level=isolation_level)
        except Exception as exc:
            await self._record(ctx, action, AuditOutcome.FAILURE, resource_id=resource_id, metadata=metadata, error=exc)
            raise
        details = dict(metadata or {})
        if result_metadata is not None:
            details.update(result_metadata(result))
        await self._record(
            ctx,
            action,
            AuditOutcome.SUCCESS,
            resource_id=resource_id or getattr(result, "id", None),
            metadata=details,
        )
        return result

    async def _record(
        self,
        ctx: RequestContext,
        action: AuditAction,
        outcome: AuditOutcome,
        *,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self._audit is None or not self._settings.audit_enabled:
            return
        if action in _READ_ACTIONS and not self._settings.audit_read_events:
            return
        await self._audit.record(
            ctx,
            action=action,
            outcome=outcome,
            resource_type=self.resource_type or None,
            resource_id=str(resource_id) if resource_id is not None else None,
            metadata=metadata,
            error=error,
        )
