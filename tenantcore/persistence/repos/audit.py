from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.domain.models import AuditEvent
from tenantcore.persistence.guards import require_tenant_id, tenant_predicate


@dataclass(frozen=True)
class AuditEventFilter:
    # Equality filters map one-to-one onto AuditEvent columns.
    event_type: str | None = None
    severity: str | None = None
    outcome: str | None = None
    actor_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    correlation_id: str | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None


_RANGE_FIELDS = ("occurred_from", "occurred_to")


def _apply_filter(stmt: Select, criteria: AuditEventFilter) -> Select:
    for item in fields(criteria):
        value = getattr(criteria, item.name)
        if value is None or item.name in _RANGE_FIELDS:
            continue
        stmt = stmt.where(getattr(AuditEvent, item.name) == value)
    if criteria.occurred_from is not None:
        stmt = stmt.where(AuditEvent.occurred_at >= criteria.occurred_from)
    if criteria.occurred_to is not None:
        stmt = stmt.where(AuditEvent.occurred_at <= criteria.occurred_to)
    return stmt


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    criteria: AuditEventFilter | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Audit rows carry no row security, so the tenant predicate is the only scope.
    require_tenant_id(tenant_id)
    stmt = _apply_filter(select(AuditEvent).where(tenant_predicate(AuditEvent, tenant_id)), criteria or AuditEventFilter())
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def get_event(session: AsyncSession, *, tenant_id: str, event_id: int) -> AuditEvent | None:
    require_tenant_id(tenant_id)
    stmt = select(AuditEvent).where(AuditEvent.id == event_id, tenant_predicate(AuditEvent, tenant_id))
    return (await session.execute(stmt)).scalar_one_or_none()
