from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.authz.permission_codes import PermissionCode
from tenantcore.authz.rbac import ResourceRef
from tenantcore.core.errors import (
    DuplicateEntityError,
    EntityNotFoundError,
    InvalidRequestError,
    OperationNotAllowedError,
    OptimisticLockError,
)
from tenantcore.domain.context import RequestContext
from tenantcore.domain.models import RecordStatus, VersionedMixin
from tenantcore.persistence.guards import tenant_predicate
from tenantcore.services.audit import AuditAction
from tenantcore.services.operations import TenantOperationService


ModelT = TypeVar("ModelT", bound=VersionedMixin)
_SORT_ORDERS = {"asc", "desc"}


@dataclass(frozen=True)
class EntityPermissions:
    create: PermissionCode
    read: PermissionCode
    update: PermissionCode
    delete: PermissionCode
    list: PermissionCode
    purge: PermissionCode | None = None


@dataclass(frozen=True)
class Page(Generic[ModelT]):
    items: list[ModelT]
    total: int
    page: int
    limit: int

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total


class AuditedMutationService(TenantOperationService, Generic[ModelT]):
    """Generic tenant-scoped CRUD composed by entity services.

    Every operation runs in one isolated transaction: RBAC gate first, then
    the statement, always constrained by the context's tenant. Updates are
    conditional on the version the caller read. Deletes are soft; ``purge``
    removes the row and is available only where ``supports_purge`` is set.
    """

    model: ClassVar[type[Any]]
    permissions: ClassVar[EntityPermissions]
    creatable_fields: ClassVar[frozenset[str]] = frozenset()
    updatable_fields: ClassVar[frozenset[str]] = frozenset()
    sortable_fields: ClassVar[frozenset[str]] = frozenset({"created_at", "updated_at", "status"})
    supports_purge: ClassVar[bool] = True

    # Hooks for entity services; both run inside the isolated transaction.
    async def _before_create(self, session: AsyncSession, ctx: RequestContext, values: dict[str, Any]) -> None:
        return None

    async def _before_update(
        self, session: AsyncSession, ctx: RequestContext, current: ModelT, values: dict[str, Any]
    ) -> None:
        return None

    def _resource(self, entity_id: str | None = None) -> ResourceRef:
        return ResourceRef(type=self.resource_type, id=entity_id)

    def _accept_fields(self, data: Mapping[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise InvalidRequestError(f"Unsupported fields for {self.resource_type}: {', '.join(unknown)}")
        values = dict(data)
        if "status" in values:
            try:
                values["status"] = RecordStatus(values["status"]).value
            except ValueError as exc:
                raise InvalidRequestError(f"Unsupported status: {values['status']}") from exc
        return values

    def _live_row(self, ctx: RequestContext, entity_id: str) -> list[Any]:
        return [
            self.model.id == entity_id,
            tenant_predicate(self.model, ctx.tenant_id),
            self.model.deleted_at.is_(None),
        ]

    async def _load_live(self, session: AsyncSession, ctx: RequestContext, entity_id: str) -> ModelT:
        result = await session.execute(select(self.model).where(*self._live_row(ctx, entity_id)))
        entity = result.scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(self.resource_type, entity_id)
        return entity

    async def create(self, ctx: RequestContext, data: Mapping[str, Any]) -> ModelT:
        # Input checks run inside the audited work so rejected payloads leave a FAILURE event.
        async def work(session: AsyncSession) -> ModelT:
            await self._gate.require(session, ctx, self.permissions.create, self._resource())
            values = self._accept_fields(data, self.creatable_fields)
            await self._before_create(session, ctx, values)
            now = self._now()
            entity = self.model(
                **values,
                id=str(uuid4()),
                tenant_id=ctx.tenant_id,
                status=RecordStatus.ACTIVE.value,
                version=0,
                created_at=now,
                updated_at=now,
                created_by_actor_id=ctx.actor_id,
                updated_by_actor_id=ctx.actor_id,
                deleted_at=None,
                deleted_by_actor_id=None,
            )
            session.add(entity)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise DuplicateEntityError(f"{self.resource_type} violates a uniqueness constraint") from exc
            return entity

        return await self._run(ctx, AuditAction.CREATE, work)

    async def update(
        self,
        ctx: RequestContext,
        entity_id: str,
        data: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> ModelT:
        async def work(session: AsyncSession) -> ModelT:
            await self._gate.require(session, ctx, self.permissions.update, self._resource(entity_id))
            values = self._accept_fields(data, self.updatable_fields)
            current = await self._load_live(session, ctx, entity_id)
            if current.version != expected_version:
                raise OptimisticLockError(self.resource_type, entity_id, expected_version)
            await self._before_update(session, ctx, current, values)
            # The version predicate makes the write itself the conflict check.
            try:
                result = await session.execute(
                    update(self.model)
                    .where(*self._live_row(ctx, entity_id), self.model.version == expected_version)
                    .values(
                        **values,
                        version=self.model.version + 1,
                        updated_at=self._now(),
                        updated_by_actor_id=ctx.actor_id,
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as exc:
                raise DuplicateEntityError(f"{self.resource_type} violates a uniqueness constraint") from exc
            if result.rowcount != 1:
                raise OptimisticLockError(self.resource_type, entity_id, expected_version)
            await session.refresh(current)
            return current

        return await self._run(
            ctx,
            AuditAction.UPDATE,
            work,
            resource_id=entity_id,
            metadata={"expected_version": expected_version, "fields": sorted(str(key) for key in data)},
        )

    async def delete(self, ctx: RequestContext, entity_id: str, *, expected_version: int | None = None) -> None:
        async def work(session: AsyncSession) -> None:
            await self._gate.require(session, ctx, self.permissions.delete, self._resource(entity_id))
            conditions = self._live_row(ctx, entity_id)
            if expected_version is not None:
                conditions.append(self.model.version == expected_version)
            now = self._now()
            async with self._bridge.deleted_rows_visible(session):
                result = await session.execute(
                    update(self.model)
                    .where(*conditions)
                    .values(
                        deleted_at=now,
                        deleted_by_actor_id=ctx.actor_id,
                        status=RecordStatus.INACTIVE.value,
                        version=self.model.version + 1,
                        updated_at=now,
                        updated_by_actor_id=ctx.actor_id,
                    )
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount != 1:
                if expected_version is not None:
                    existing = await session.execute(select(self.model.id).where(*self._live_row(ctx, entity_id)))
                    if existing.first() is not None:
                        raise OptimisticLockError(self.resource_type, entity_id, expected_version)
                raise EntityNotFoundError(self.resource_type, entity_id)

        await self._run(ctx, AuditAction.DELETE, work, resource_id=entity_id)

    async def purge(self, ctx: RequestContext, entity_id: str) -> None:
        # Hard delete; also removes rows that were already soft-deleted.
        async def work(session: AsyncSession) -> None:
            if not self.supports_purge or self.permissions.purge is None:
                raise OperationNotAllowedError(f"{self.resource_type} rows cannot be purged")
            await self._gate.require(session, ctx, self.permissions.purge, self._resource(entity_id))
            async with self._bridge.deleted_rows_visible(session):
                result = await session.execute(
                    delete(self.model)
                    .where(self.model.id == entity_id, tenant_predicate(self.model, ctx.tenant_id))
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount != 1:
                raise EntityNotFoundError(self.resource_type, entity_id)

        await self._run(ctx, AuditAction.PURGE, work, resource_id=entity_id)

    async def find_by_id(self, ctx: RequestContext, entity_id: str) -> ModelT | None:
        async def work(session: AsyncSession) -> ModelT | None:
            await self._gate.require(session, ctx, self.permissions.read, self._resource(entity_id))
            result = await session.execute(select(self.model).where(*self._live_row(ctx, entity_id)))
            return result.scalar_one_or_none()

        return await self._run(ctx, AuditAction.READ, work, resource_id=entity_id)

    async def get(self, ctx: RequestContext, entity_id: str) -> ModelT:
        entity = await self.find_by_id(ctx, entity_id)
        if entity is None:
            raise EntityNotFoundError(self.resource_type, entity_id)
        return entity

    def _page_bounds(self, page: int, limit: int | None) -> tuple[int, int]:
        resolved_limit = limit if limit is not None else self._settings.list_default_page_size
        resolved_limit = min(max(1, int(resolved_limit)), self._settings.list_max_page_size)
        return max(1, int(page)), resolved_limit

    async def list(
        self,
        ctx: RequestContext,
        *,
        page: int = 1,
        limit: int | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Page[ModelT]:
        page, limit = self._page_bounds(page, limit)

        async def work(session: AsyncSession) -> Page[ModelT]:
            await self._gate.require(session, ctx, self.permissions.list, self._resource())
            # Sort input is only ever resolved against the allow-list.
            if sort_by not in self.sortable_fields:
                raise InvalidRequestError(f"Unsupported sort field for {self.resource_type}: {sort_by}")
            if sort_order not in _SORT_ORDERS:
                raise InvalidRequestError(f"Unsupported sort order: {sort_order}")
            column = getattr(self.model, sort_by)
            ordering = column.asc() if sort_order == "asc" else column.desc()
            scope = [tenant_predicate(self.model, ctx.tenant_id), self.model.deleted_at.is_(None)]
            total = (await session.execute(select(func.count()).select_from(self.model).where(*scope))).scalar_one()
            result = await session.execute(
                select(self.model)
                .where(*scope)
                .order_by(ordering, self.model.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return Page(items=list(result.scalars().all()), total=int(total), page=page, limit=limit)

        return await self._run(
            ctx,
            AuditAction.LIST,
            work,
            metadata={"page": page, "limit": limit, "sort_by": sort_by, "sort_order": sort_order},
        )
