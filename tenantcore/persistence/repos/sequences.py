from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.domain.models import NumberSequence
from tenantcore.persistence.guards import require_tenant_id, tenant_predicate


async def lock_sequence(session: AsyncSession, *, tenant_id: str, sequence_id: str) -> NumberSequence | None:
    # Row lock serializes concurrent advancement; waiters re-read the committed value.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(NumberSequence)
        .where(
            NumberSequence.id == sequence_id,
            tenant_predicate(NumberSequence, tenant_id),
            NumberSequence.deleted_at.is_(None),
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_code(
    session: AsyncSession,
    *,
    tenant_id: str,
    code: str,
    include_deleted: bool = False,
) -> NumberSequence | None:
    require_tenant_id(tenant_id)
    stmt = select(NumberSequence).where(tenant_predicate(NumberSequence, tenant_id), NumberSequence.code == code)
    if not include_deleted:
        stmt = stmt.where(NumberSequence.deleted_at.is_(None))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
