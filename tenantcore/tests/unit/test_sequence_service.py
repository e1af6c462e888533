from __future__ import annotations

from datetime import datetime, timedelta
import logging

import pytest

from tenantcore.core.clock import utcnow
from tenantcore.core.errors import (
    AuthorizationDeniedError,
    DuplicateEntityError,
    InvalidRequestError,
    OperationNotAllowedError,
    SequenceExhaustedError,
)
from tenantcore.services.sequences import SequenceService
from tenantcore.tests.utils.contexts import make_context


class FrozenClock:
    # Manually advanced time source for reset-boundary tests.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def sequences(bridge, audit, settings) -> SequenceService:
    return SequenceService(bridge=bridge, audit=audit, settings=settings)


def _admin(tenant):
    return make_context(tenant.tenant_id, "ADMIN", user_id=tenant.admin_user_id)


@pytest.mark.asyncio
async def test_create_applies_defaults(sequences, tenant) -> None:
    sequence = await sequences.create(_admin(tenant), {"code": "INV", "name": "Invoices", "prefix": "INV"})

    assert sequence.current_value == 0
    assert sequence.padding_length == 6
    assert sequence.step == 1
    assert sequence.reset_mode == "NEVER"
    assert sequence.format_template == "{prefix}-{number}"
    assert sequence.version == 0


@pytest.mark.asyncio
async def test_generate_after_reset_formats_next_value(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "INV", "name": "Invoices", "prefix": "INV"})
    await sequences.reset(ctx, sequence.id, 5)

    generated = await sequences.generate_number(ctx, sequence.id)

    assert generated.value == 6
    assert generated.formatted == "INV-000006"
    stored = await sequences.get(ctx, sequence.id)
    assert stored.current_value == 6
    assert stored.version == 2


@pytest.mark.asyncio
async def test_get_next_is_monotonic(sequences, tenant, audit_sink) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "DN", "name": "Delivery notes", "step": 5})

    values = [await sequences.get_next(ctx, sequence.id) for _ in range(3)]

    assert values == [5, 10, 15]
    metadata = [record.metadata for record in audit_sink.of_type("UPDATE")]
    assert [item["value"] for item in metadata] == [5, 10, 15]


@pytest.mark.asyncio
async def test_preview_does_not_consume(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "PO", "name": "Orders", "prefix": "PO", "padding_length": 3})

    assert await sequences.preview(ctx, sequence.id) == "PO-001"
    assert await sequences.preview(ctx, sequence.id) == "PO-001"
    assert (await sequences.generate_number(ctx, sequence.id)).formatted == "PO-001"


@pytest.mark.asyncio
async def test_duplicate_code_is_rejected_even_after_delete(sequences, tenant) -> None:
    ctx = _admin(tenant)
    first = await sequences.create(ctx, {"code": "INV", "name": "Invoices"})

    with pytest.raises(DuplicateEntityError):
        await sequences.create(ctx, {"code": "INV", "name": "Again"})
    await sequences.delete(ctx, first.id)
    with pytest.raises(DuplicateEntityError):
        await sequences.create(ctx, {"code": "INV", "name": "Again"})


@pytest.mark.asyncio
async def test_same_code_in_other_tenant_is_independent(sequences, tenant, other_tenant) -> None:
    mine = await sequences.create(_admin(tenant), {"code": "INV", "name": "Invoices"})
    theirs = await sequences.create(
        make_context(other_tenant.tenant_id, "ADMIN"), {"code": "INV", "name": "Invoices"}
    )

    assert await sequences.get_next(_admin(tenant), mine.id) == 1
    assert await sequences.get_next(_admin(tenant), mine.id) == 2
    assert await sequences.get_next(make_context(other_tenant.tenant_id, "ADMIN"), theirs.id) == 1


@pytest.mark.asyncio
async def test_purge_is_never_allowed(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "INV", "name": "Invoices"})

    with pytest.raises(OperationNotAllowedError):
        await sequences.purge(ctx, sequence.id)


@pytest.mark.asyncio
async def test_reset_value_must_respect_bounds(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "INV", "name": "Invoices", "min_value": 10, "max_value": 20})

    with pytest.raises(InvalidRequestError):
        await sequences.reset(ctx, sequence.id, 5)
    with pytest.raises(InvalidRequestError):
        await sequences.reset(ctx, sequence.id, 21)
    reset = await sequences.reset(ctx, sequence.id, 20)
    assert reset.current_value == 20


@pytest.mark.asyncio
async def test_exhausted_sequence_keeps_its_value(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "T", "name": "Tickets", "max_value": 2})
    await sequences.get_next(ctx, sequence.id)
    await sequences.get_next(ctx, sequence.id)

    with pytest.raises(SequenceExhaustedError):
        await sequences.get_next(ctx, sequence.id)
    assert (await sequences.get(ctx, sequence.id)).current_value == 2


@pytest.mark.asyncio
async def test_clamped_value_is_logged(sequences, tenant, caplog) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "HI", "name": "High", "min_value": 1000})

    with caplog.at_level(logging.WARNING, logger="tenantcore.services.sequences"):
        value = await sequences.get_next(ctx, sequence.id)

    assert value == 1000
    assert "sequence_value_clamped" in caplog.text


@pytest.mark.asyncio
async def test_daily_sequence_restarts_on_new_day(bridge, audit, settings, tenant) -> None:
    clock = FrozenClock(utcnow() + timedelta(seconds=1))
    sequences = SequenceService(bridge=bridge, audit=audit, settings=settings, time_provider=clock)
    ctx = _admin(tenant)
    sequence = await sequences.create(
        ctx, {"code": "DAY", "name": "Daily", "reset_mode": "DAILY", "reset_value": 0}
    )

    assert await sequences.get_next(ctx, sequence.id) == 1
    assert await sequences.get_next(ctx, sequence.id) == 2
    clock.now = clock.now + timedelta(days=1)
    assert await sequences.get_next(ctx, sequence.id) == 1


@pytest.mark.asyncio
async def test_update_revalidates_merged_configuration(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "INV", "name": "Invoices", "min_value": 5})
    await sequences.create(ctx, {"code": "CRN", "name": "Credit notes"})

    with pytest.raises(InvalidRequestError):
        await sequences.update(ctx, sequence.id, {"max_value": 4}, expected_version=0)
    with pytest.raises(DuplicateEntityError):
        await sequences.update(ctx, sequence.id, {"code": "CRN"}, expected_version=0)
    updated = await sequences.update(ctx, sequence.id, {"suffix": "/26"}, expected_version=0)
    assert updated.suffix == "/26"


@pytest.mark.asyncio
async def test_driver_may_generate_but_not_reset(sequences, tenant) -> None:
    sequence = await sequences.create(_admin(tenant), {"code": "DN", "name": "Delivery notes"})
    driver = make_context(tenant.tenant_id, "DRIVER")

    assert await sequences.get_next(driver, sequence.id) == 1
    with pytest.raises(AuthorizationDeniedError):
        await sequences.reset(driver, sequence.id)
    with pytest.raises(AuthorizationDeniedError):
        await sequences.update(driver, sequence.id, {"name": "Mine"}, expected_version=1)


@pytest.mark.asyncio
async def test_deactivated_sequence_stops_issuing_numbers(sequences, tenant) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "PO", "name": "Purchase orders", "prefix": "PO"})
    assert await sequences.get_next(ctx, sequence.id) == 1

    deactivated = await sequences.deactivate(ctx, sequence.id, expected_version=1)

    assert deactivated.status == "INACTIVE"
    with pytest.raises(OperationNotAllowedError):
        await sequences.get_next(ctx, sequence.id)
    stored = await sequences.get(ctx, sequence.id)
    assert stored.current_value == 1


@pytest.mark.asyncio
async def test_refused_purge_is_audited(sequences, tenant, audit_sink) -> None:
    ctx = _admin(tenant)
    sequence = await sequences.create(ctx, {"code": "GRN", "name": "Goods received"})

    with pytest.raises(OperationNotAllowedError):
        await sequences.purge(ctx, sequence.id)

    [event] = audit_sink.of_type("PURGE")
    assert event.outcome == "FAILURE"
    assert event.error_code == "OPERATION_NOT_ALLOWED"
    assert event.resource_id == sequence.id
