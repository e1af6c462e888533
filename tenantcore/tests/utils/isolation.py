from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantcore.persistence.isolation import SessionClaims
from tenantcore.services.audit import AuditRecord


class RecordingClaimsPublisher:
    # Stand-in for the Postgres publisher on databases without row security.
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[SessionClaims] = []
        self.visibility: list[bool] = []

    async def publish(self, session: AsyncSession, claims: SessionClaims) -> None:
        if self.fail:
            raise RuntimeError("claims setting unavailable")
        self.published.append(claims)

    async def set_deleted_rows_visible(self, session: AsyncSession, visible: bool) -> None:
        self.visibility.append(visible)


class MemoryAuditSink:
    # Collects audit records; flip `fail` to simulate an audit outage.
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.records: list[AuditRecord] = []

    async def write(self, record: AuditRecord) -> None:
        if self.fail:
            raise ConnectionError("audit sink unavailable")
        self.records.append(record)

    def of_type(self, event_type: str) -> list[AuditRecord]:
        return [record for record in self.records if record.event_type == event_type]


class SerializedSessionFactory:
    """Hands out one session at a time, queueing the rest.

    The unit-test engine shares a single SQLite connection, which has no row
    locks; queueing whole transactions gives concurrent callers the ordering
    PostgreSQL's row locks would.
    """

    def __init__(self, factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            async with self._factory() as session:
                yield session
