from __future__ import annotations

import os
from uuid import uuid4

import pytest
from sqlalchemy import text

from tenantcore.core.config import Settings
from tenantcore.domain.models import Base
from tenantcore.persistence.db import create_engine, create_session_factory
from tenantcore.persistence.isolation import IsolationBridge, PostgresClaimsPublisher
from tenantcore.persistence.rls import default_table_policies, render_row_security
from tenantcore.services.provisioning import TenantProvisioner


DATABASE_URL = os.getenv("TENANTCORE_TEST_DATABASE_URL")


def pytest_collection_modifyitems(config, items) -> None:
    # Row security needs a real PostgreSQL server; skip cleanly without one.
    if DATABASE_URL:
        return
    skip = pytest.mark.skip(reason="TENANTCORE_TEST_DATABASE_URL not set")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=DATABASE_URL or "postgresql+asyncpg://localhost/unused",
        db_transaction_timeout_ms=10000,
        db_pool_size=20,
        db_max_overflow=10,
    )


@pytest.fixture
async def engine(settings, catalog):
    engine = create_engine(settings)
    roles = tuple(catalog.roles)
    admins = ("SYSTEM_ADMIN", "ADMIN")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
        for statement in render_row_security(
            default_table_policies(roles, admins),
            claims_setting=settings.db_claims_setting,
            db_role=settings.db_session_role,
        ):
            await conn.execute(text(statement))
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def publisher(settings) -> PostgresClaimsPublisher:
    return PostgresClaimsPublisher.from_settings(settings)


@pytest.fixture
def bridge(session_factory, publisher, settings) -> IsolationBridge:
    return IsolationBridge(session_factory, publisher=publisher, settings=settings)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def provisioner(bridge, catalog) -> TenantProvisioner:
    return TenantProvisioner(bridge, catalog=catalog)


@pytest.fixture
async def tenant(provisioner):
    suffix = uuid4().hex[:8]
    return await provisioner.provision(name=f"PG {suffix}", slug=f"pg-{suffix}", admin_user_id=str(uuid4()))


@pytest.fixture
async def other_tenant(provisioner):
    suffix = uuid4().hex[:8]
    return await provisioner.provision(name=f"PG other {suffix}", slug=f"pg-other-{suffix}", admin_user_id=str(uuid4()))
