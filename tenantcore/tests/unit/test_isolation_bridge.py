from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, OperationalError

from tenantcore.core.clock import utcnow
from tenantcore.core.errors import IsolationPublishError, TransactionTimeoutError
from tenantcore.domain.models import Tenant
from tenantcore.persistence.isolation import IsolationBridge, PostgresClaimsPublisher, session_claims
from tenantcore.persistence.repos import tenants as tenants_repo
from tenantcore.tests.utils.contexts import make_context
from tenantcore.tests.utils.isolation import RecordingClaimsPublisher


async def _tenant_exists(session_factory, tenant_id: str) -> bool:
    async with session_factory() as session:
        result = await session.execute(select(Tenant.id).where(Tenant.id == tenant_id))
        return result.first() is not None


def test_session_claims_carry_primary_role_and_role_set() -> None:
    tenant_id = str(uuid4())
    ctx = make_context(tenant_id, "WORKER", "DRIVER", correlation_id="req-1")

    claims = session_claims(ctx)

    assert claims.role == "WORKER"
    assert claims.roles == "WORKER,DRIVER"
    assert json.loads(claims.to_json()) == {
        "correlation_id": "req-1",
        "role": "WORKER",
        "roles": "WORKER,DRIVER",
        "tenant_id": tenant_id,
        "user_id": ctx.actor_id,
    }


@pytest.mark.asyncio
async def test_claims_are_published_before_the_operation(bridge, publisher) -> None:
    ctx = make_context(str(uuid4()), "VIEWER")
    seen: list[int] = []

    async def op(session):
        seen.append(len(publisher.published))
        return "done"

    assert await bridge.with_isolated_transaction(ctx, op) == "done"
    assert seen == [1]
    assert publisher.published[0].tenant_id == ctx.tenant_id


@pytest.mark.asyncio
async def test_publish_failure_aborts_before_operation(session_factory, settings) -> None:
    bridge = IsolationBridge(session_factory, publisher=RecordingClaimsPublisher(fail=True), settings=settings)
    called = False

    async def op(session):
        nonlocal called
        called = True

    with pytest.raises(IsolationPublishError):
        await bridge.with_isolated_transaction(make_context(str(uuid4()), "VIEWER"), op)
    assert called is False


@pytest.mark.asyncio
async def test_postgres_publisher_fails_closed_without_set_config(session_factory, settings) -> None:
    # sqlite has no set_config(); the bridge must refuse to run rather than continue unscoped.
    bridge = IsolationBridge(session_factory, publisher=PostgresClaimsPublisher(), settings=settings)

    async def op(session):
        raise AssertionError("operation must not run")

    with pytest.raises(IsolationPublishError):
        await bridge.with_isolated_transaction(make_context(str(uuid4()), "VIEWER"), op)


def test_postgres_publisher_rejects_unsafe_role_names() -> None:
    with pytest.raises(ValueError):
        PostgresClaimsPublisher(session_role='authenticated"; DROP TABLE tenants; --')
    assert PostgresClaimsPublisher(session_role=None) is not None


@pytest.mark.asyncio
async def test_operation_error_rolls_back(bridge, session_factory) -> None:
    ctx = make_context(str(uuid4()), "VIEWER")
    tenant_id = str(uuid4())

    async def op(session):
        await tenants_repo.create_tenant(
            session, tenant_id=tenant_id, name="Rolled back", slug=f"rb-{tenant_id[:8]}", now=utcnow()
        )
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await bridge.with_isolated_transaction(ctx, op)
    assert await _tenant_exists(session_factory, tenant_id) is False


@pytest.mark.asyncio
async def test_successful_operation_commits(bridge, session_factory) -> None:
    ctx = make_context(str(uuid4()), "VIEWER")
    tenant_id = str(uuid4())

    async def op(session):
        await tenants_repo.create_tenant(
            session, tenant_id=tenant_id, name="Committed", slug=f"ok-{tenant_id[:8]}", now=utcnow()
        )

    await bridge.with_isolated_transaction(ctx, op)
    assert await _tenant_exists(session_factory, tenant_id) is True


@pytest.mark.asyncio
async def test_deadline_expiry_rolls_back(bridge, session_factory) -> None:
    ctx = make_context(str(uuid4()), "VIEWER")
    tenant_id = str(uuid4())

    async def op(session):
        await tenants_repo.create_tenant(
            session, tenant_id=tenant_id, name="Too slow", slug=f"slow-{tenant_id[:8]}", now=utcnow()
        )
        await asyncio.sleep(1)

    with pytest.raises(TransactionTimeoutError) as exc_info:
        await bridge.with_isolated_transaction(ctx, op, timeout_ms=50)
    assert exc_info.value.retryable is True
    assert await _tenant_exists(session_factory, tenant_id) is False


@pytest.mark.asyncio
async def test_deleted_rows_flag_is_scoped_to_the_block(bridge, publisher) -> None:
    ctx = make_context(str(uuid4()), "VIEWER")

    async def op(session):
        async with bridge.deleted_rows_visible(session):
            assert publisher.visibility == [True]

    await bridge.with_isolated_transaction(ctx, op)
    assert publisher.visibility == [True, False]


@pytest.mark.asyncio
async def test_deleted_rows_flag_is_reset_when_caller_handles_the_error(bridge, publisher) -> None:
    ctx = make_context(str(uuid4()), "VIEWER")

    async def op(session):
        try:
            async with bridge.deleted_rows_visible(session):
                await session.execute(text("SELECT * FROM no_such_table"))
        except OperationalError:
            pass
        # Later statements in the same transaction must not see deleted rows.
        return list(publisher.visibility)

    assert await bridge.with_isolated_transaction(ctx, op) == [True, False]


class _AbortedTransactionPublisher(RecordingClaimsPublisher):
    # Mimics PostgreSQL refusing every statement after an error in the transaction.
    async def set_deleted_rows_visible(self, session, visible: bool) -> None:
        await super().set_deleted_rows_visible(session, visible)
        if not visible:
            raise DBAPIError("SELECT set_config", {}, Exception("current transaction is aborted"))


@pytest.mark.asyncio
async def test_failed_flag_reset_does_not_mask_the_statement_error(session_factory, settings) -> None:
    publisher = _AbortedTransactionPublisher()
    bridge = IsolationBridge(session_factory, publisher=publisher, settings=settings)

    async def op(session):
        async with bridge.deleted_rows_visible(session):
            raise LookupError("purge target vanished")

    with pytest.raises(LookupError):
        await bridge.with_isolated_transaction(make_context(str(uuid4()), "ADMIN"), op)
    assert publisher.visibility == [True, False]
