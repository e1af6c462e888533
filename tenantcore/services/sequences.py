from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.permission_codes import PermissionCode
from tenantcore.core.errors import (
    DuplicateEntityError,
    EntityNotFoundError,
    InvalidRequestError,
    OperationNotAllowedError,
)
from tenantcore.domain.context import RequestContext
from tenantcore.domain.models import NumberSequence, RecordStatus, ResetMode
from tenantcore.domain.sequences import (
    DEFAULT_FORMAT_TEMPLATE,
    DEFAULT_PADDING_LENGTH,
    SequenceState,
    check_within_bounds,
    compute_next,
    render_number,
    validate_configuration,
)
from tenantcore.persistence.repos import sequences as sequences_repo
from tenantcore.services.audit import AuditAction
from tenantcore.services.mutations import AuditedMutationService, EntityPermissions


logger = logging.getLogger(__name__)

_CONFIG_FIELDS = frozenset(
    {
        "name",
        "description",
        "prefix",
        "suffix",
        "padding_length",
        "min_value",
        "max_value",
        "step",
        "reset_mode",
        "reset_value",
        "format_template",
        "example_output",
    }
)
_CREATE_DEFAULTS: dict[str, Any] = {
    "prefix": "",
    "padding_length": DEFAULT_PADDING_LENGTH,
    "min_value": 1,
    "step": 1,
    "reset_mode": ResetMode.NEVER.value,
    "reset_value": 1,
    "format_template": DEFAULT_FORMAT_TEMPLATE,
}


@dataclass(frozen=True)
class GeneratedNumber:
    sequence_id: str
    value: int
    formatted: str


def format_sequence_number(sequence: NumberSequence, value: int) -> str:
    return render_number(
        value,
        format_template=sequence.format_template,
        prefix=sequence.prefix,
        suffix=sequence.suffix,
        padding_length=sequence.padding_length,
    )


class SequenceService(AuditedMutationService[NumberSequence]):
    """Tenant-scoped document numbering.

    ``get_next`` locks the sequence row for the rest of its transaction, so
    concurrent callers queue on the lock and each reads the value committed
    by the previous one. Sequences are deactivated, never purged.
    """

    model = NumberSequence
    resource_type = "NumberSequence"
    permissions = EntityPermissions(
        create=PermissionCode.NUMBER_SEQUENCE_CREATE,
        read=PermissionCode.NUMBER_SEQUENCE_READ,
        update=PermissionCode.NUMBER_SEQUENCE_UPDATE,
        delete=PermissionCode.NUMBER_SEQUENCE_DELETE,
        list=PermissionCode.NUMBER_SEQUENCE_LIST,
    )
    creatable_fields = _CONFIG_FIELDS | {"code"}
    updatable_fields = _CONFIG_FIELDS | {"code", "status"}
    sortable_fields = frozenset({"created_at", "updated_at", "status", "code", "name"})
    supports_purge = False

    async def _before_create(self, session: AsyncSession, ctx: RequestContext, values: dict[str, Any]) -> None:
        code = str(values.get("code") or "").strip()
        if not code or not str(values.get("name") or "").strip():
            raise InvalidRequestError("code and name are required")
        for key, default in _CREATE_DEFAULTS.items():
            if values.get(key) is None:
                values[key] = default
        values["code"] = code
        values["current_value"] = 0
        validate_configuration(values)
        existing = await sequences_repo.get_by_code(session, tenant_id=ctx.tenant_id, code=code, include_deleted=True)
        if existing is not None:
            raise DuplicateEntityError(f"Number sequence {code} already exists")

    async def _before_update(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        current: NumberSequence,
        values: dict[str, Any],
    ) -> None:
        merged = {field: getattr(current, field) for field in _CONFIG_FIELDS}
        merged.update(values)
        validate_configuration(merged)
        code = values.get("code")
        if code is not None and code != current.code:
            clash = await sequences_repo.get_by_code(session, tenant_id=ctx.tenant_id, code=code, include_deleted=True)
            if clash is not None:
                raise DuplicateEntityError(f"Number sequence {code} already exists")

    async def _advance(self, session: AsyncSession, ctx: RequestContext, sequence_id: str) -> tuple[NumberSequence, int]:
        sequence = await sequences_repo.lock_sequence(session, tenant_id=ctx.tenant_id, sequence_id=sequence_id)
        if sequence is None:
            raise EntityNotFoundError(self.resource_type, sequence_id)
        if sequence.status != RecordStatus.ACTIVE.value:
            raise OperationNotAllowedError(f"Number sequence {sequence_id} is inactive")
        now = self._now()
        advance = compute_next(SequenceState.of(sequence), now)
        if advance.clamped and not advance.reset:
            logger.warning(
                "sequence_value_clamped tenant_id=%s sequence_id=%s value=%s",
                ctx.tenant_id,
                sequence_id,
                advance.value,
            )
        sequence.current_value = advance.value
        if advance.reset:
            sequence.last_reset_at = now
        sequence.version = sequence.version + 1
        sequence.updated_at = now
        sequence.updated_by_actor_id = ctx.actor_id
        await session.flush()
        return sequence, advance.value

    def _isolation_level(self) -> str | None:
        return self._settings.db_sequence_isolation_level

    async def get_next(self, ctx: RequestContext, sequence_id: str) -> int:
        async def work(session: AsyncSession) -> int:
            await self._gate.require(
                session, ctx, PermissionCode.NUMBER_SEQUENCE_GENERATE, self._resource(sequence_id)
            )
            _, value = await self._advance(session, ctx, sequence_id)
            return value

        return await self._run(
            ctx,
            AuditAction.UPDATE,
            work,
            resource_id=sequence_id,
            metadata={"operation": "get_next"},
            result_metadata=lambda value: {"value": value},
            isolation_level=self._isolation_level(),
        )

    async def generate_number(self, ctx: RequestContext, sequence_id: str) -> GeneratedNumber:
        # Advance and render in the same transaction.
        async def work(session: AsyncSession) -> GeneratedNumber:
            await self._gate.require(
                session, ctx, PermissionCode.NUMBER_SEQUENCE_GENERATE, self._resource(sequence_id)
            )
            sequence, value = await self._advance(session, ctx, sequence_id)
            return GeneratedNumber(
                sequence_id=sequence_id,
                value=value,
                formatted=format_sequence_number(sequence, value),
            )

        return await self._run(
            ctx,
            AuditAction.UPDATE,
            work,
            resource_id=sequence_id,
            metadata={"operation": "generate_number"},
            result_metadata=lambda generated: {"value": generated.value, "number": generated.formatted},
            isolation_level=self._isolation_level(),
        )

    async def preview(self, ctx: RequestContext, sequence_id: str) -> str:
        # Render what the next number would be without consuming it.
        async def work(session: AsyncSession) -> str:
            await self._gate.require(session, ctx, PermissionCode.NUMBER_SEQUENCE_READ, self._resource(sequence_id))
            sequence = await self._load_live(session, ctx, sequence_id)
            advance = compute_next(SequenceState.of(sequence), self._now())
            return format_sequence_number(sequence, advance.value)

        return await self._run(
            ctx, AuditAction.READ, work, resource_id=sequence_id, metadata={"operation": "preview"}
        )

    async def reset(self, ctx: RequestContext, sequence_id: str, new_value: int | None = None) -> NumberSequence:
        async def work(session: AsyncSession) -> NumberSequence:
            await self._gate.require(session, ctx, PermissionCode.NUMBER_SEQUENCE_RESET, self._resource(sequence_id))
            sequence = await sequences_repo.lock_sequence(session, tenant_id=ctx.tenant_id, sequence_id=sequence_id)
            if sequence is None:
                raise EntityNotFoundError(self.resource_type, sequence_id)
            value = sequence.reset_value if new_value is None else int(new_value)
            check_within_bounds(value, min_value=sequence.min_value, max_value=sequence.max_value)
            now = self._now()
            sequence.current_value = value
            sequence.last_reset_at = now
            sequence.version = sequence.version + 1
            sequence.updated_at = now
            sequence.updated_by_actor_id = ctx.actor_id
            await session.flush()
            return sequence

        return await self._run(
            ctx,
            AuditAction.UPDATE,
            work,
            resource_id=sequence_id,
            metadata={"operation": "reset", "requested_value": new_value},
            isolation_level=self._isolation_level(),
        )

    async def deactivate(self, ctx: RequestContext, sequence_id: str, *, expected_version: int) -> NumberSequence:
        # Keeps the row and its counter; only get_next and generate_number stop.
        return await self.update(
            ctx, sequence_id, {"status": RecordStatus.INACTIVE.value}, expected_version=expected_version
        )
