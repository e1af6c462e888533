from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict, dataclass
import json
import logging
import re
from typing import Protocol, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantcore.core.config import Settings, get_settings
from tenantcore.core.errors import IsolationPublishError, TransactionTimeoutError
from tenantcore.domain.context import RequestContext


logger = logging.getLogger(__name__)

T = TypeVar("T")
_ROLE_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")
# Transaction-local flag read by app.deleted_rows_visible() in the row security rules.
DELETED_ROWS_SETTING = "app.deleted_rows_visible"


@dataclass(frozen=True)
class SessionClaims:
    tenant_id: str
    user_id: str | None
    role: str
    roles: str
    correlation_id: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)


def session_claims(ctx: RequestContext) -> SessionClaims:
    # role is the primary role; roles is the comma-joined resolved set.
    return SessionClaims(
        tenant_id=ctx.tenant_id,
        user_id=ctx.actor_id,
        role=ctx.primary_role or "",
        roles=",".join(ctx.roles),
        correlation_id=ctx.correlation_id,
    )


class ClaimsPublisher(Protocol):
    async def publish(self, session: AsyncSession, claims: SessionClaims) -> None: ...

    async def set_deleted_rows_visible(self, session: AsyncSession, visible: bool) -> None: ...


class PostgresClaimsPublisher:
    """Publishes claims as transaction-local settings on PostgreSQL.

    ``set_config(..., true)`` scopes every value to the current transaction, so
    a pooled connection never carries claims past commit or rollback.
    """

    def __init__(
        self,
        *,
        claims_setting: str = "request.jwt.claims",
        session_role: str | None = "authenticated",
        statement_timeout_ms: int = 0,
    ) -> None:
        if session_role and not _ROLE_NAME_PATTERN.match(session_role):
            raise ValueError(f"Invalid session role name: {session_role!r}")
        self._claims_setting = claims_setting
        self._session_role = session_role or None
        self._statement_timeout_ms = max(0, int(statement_timeout_ms))

    @classmethod
    def from_settings(cls, settings: Settings) -> PostgresClaimsPublisher:
        return cls(
            claims_setting=settings.db_claims_setting,
            session_role=settings.db_session_role,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )

    async def publish(self, session: AsyncSession, claims: SessionClaims) -> None:
        await session.execute(
            text("SELECT set_config(:name, :claims, true)"),
            {"name": self._claims_setting, "claims": claims.to_json()},
        )
        if self._statement_timeout_ms:
            await session.execute(
                text("SELECT set_config('statement_timeout', :value, true)"),
                {"value": str(self._statement_timeout_ms)},
            )
        if self._session_role:
            # Assume the policy role so row security applies even to table owners.
            await session.execute(text(f'SET LOCAL ROLE "{self._session_role}"'))

    async def set_deleted_rows_visible(self, session: AsyncSession, visible: bool) -> None:
        await session.execute(
            text("SELECT set_config(:name, :value, true)"),
            {"name": DELETED_ROWS_SETTING, "value": "on" if visible else "off"},
        )


class IsolationBridge:
    """Runs operations inside a transaction scoped to one request context.

    The first statements of every transaction publish the context's claims;
    if that fails the transaction is rolled back and ``IsolationPublishError``
    is raised. Each transaction has a deadline and is rolled back on expiry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        publisher: ClaimsPublisher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._publisher = publisher or PostgresClaimsPublisher.from_settings(self._settings)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @property
    def publisher(self) -> ClaimsPublisher:
        return self._publisher

    @asynccontextmanager
    async def transaction(
        self, ctx: RequestContext, *, isolation_level: str | None = None
    ) -> AsyncIterator[AsyncSession]:
        claims = session_claims(ctx)
        async with self._session_factory() as session:
            async with session.begin():
                if isolation_level:
                    await session.connection(execution_options={"isolation_level": isolation_level})
                try:
                    await self._publisher.publish(session, claims)
                except Exception as exc:  # noqa: BLE001 - any publish failure must abort the transaction
                    logger.error(
                        "isolation_claims_publish_failed tenant_id=%s correlation_id=%s",
                        claims.tenant_id,
                        claims.correlation_id,
                        exc_info=exc,
                    )
                    raise IsolationPublishError() from exc
                yield session

    async def with_isolated_transaction(
        self,
        ctx: RequestContext,
        op: Callable[[AsyncSession], Awaitable[T]],
        *,
        isolation_level: str | None = None,
        timeout_ms: int | None = None,
    ) -> T:
        # Commit on success, roll back on any error or on deadline expiry.
        async def _run() -> T:
            async with self.transaction(ctx, isolation_level=isolation_level) as session:
                return await op(session)

        deadline_ms = self._settings.db_transaction_timeout_ms if timeout_ms is None else timeout_ms
        if not deadline_ms or deadline_ms <= 0:
            return await _run()
        try:
            return await asyncio.wait_for(_run(), timeout=deadline_ms / 1000.0)
        except TransactionTimeoutError:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning(
                "isolated_transaction_timeout tenant_id=%s correlation_id=%s timeout_ms=%s",
                ctx.tenant_id,
                ctx.correlation_id,
                deadline_ms,
            )
            raise TransactionTimeoutError() from exc

    @asynccontextmanager
    async def deleted_rows_visible(self, session: AsyncSession) -> AsyncIterator[None]:
        # Soft-delete and purge statements must see the row after (or while) it is deleted.
        # The flag is switched off again even when the caller handles the statement error.
        await self._publisher.set_deleted_rows_visible(session, True)
        try:
            yield
        except Exception:
            # An aborted PostgreSQL transaction rejects the reset; the original error wins.
            with suppress(DBAPIError):
                await self._publisher.set_deleted_rows_visible(session, False)
            raise
        await self._publisher.set_deleted_rows_visible(session, False)
