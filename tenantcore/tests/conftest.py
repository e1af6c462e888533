from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from tenantcore.authz.catalog import load_catalog
from tenantcore.core.config import Settings
from tenantcore.domain.models import Base
from tenantcore.persistence.db import create_session_factory
from tenantcore.persistence.isolation import IsolationBridge
from tenantcore.services.audit import AuditRecorder
from tenantcore.services.provisioning import TenantProvisioner
from tenantcore.tests.utils.isolation import MemoryAuditSink, RecordingClaimsPublisher


@pytest.fixture
def settings() -> Settings:
    # Explicit settings so local .env files never leak into unit tests.
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        db_transaction_timeout_ms=5000,
        audit_enabled=True,
        audit_read_events=True,
        list_default_page_size=20,
        list_max_page_size=100,
    )


@pytest.fixture
async def engine():
    # One in-memory database per test, shared across sessions through a static pool.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def publisher() -> RecordingClaimsPublisher:
    return RecordingClaimsPublisher()


@pytest.fixture
def bridge(session_factory, publisher, settings) -> IsolationBridge:
    return IsolationBridge(session_factory, publisher=publisher, settings=settings)


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit(audit_sink) -> AuditRecorder:
    return AuditRecorder(audit_sink)


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def provisioner(bridge, catalog) -> TenantProvisioner:
    return TenantProvisioner(bridge, catalog=catalog)


@pytest.fixture
async def tenant(provisioner):
    # Fresh tenant with catalog roles, grants and an ADMIN member.
    suffix = uuid4().hex[:8]
    return await provisioner.provision(
        name=f"Tenant {suffix}",
        slug=f"tenant-{suffix}",
        admin_user_id=str(uuid4()),
    )


@pytest.fixture
async def other_tenant(provisioner):
    suffix = uuid4().hex[:8]
    return await provisioner.provision(
        name=f"Other {suffix}",
        slug=f"other-{suffix}",
        admin_user_id=str(uuid4()),
    )
