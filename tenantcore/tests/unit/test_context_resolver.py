from __future__ import annotations

from uuid import uuid4

import pytest

from tenantcore.core.errors import TenantInactiveError, UnauthenticatedError
from tenantcore.domain.context import IdentityClaims, RequestMeta
from tenantcore.domain.models import TenantStatus
from tenantcore.services.context import ContextResolver
from tenantcore.tests.utils.contexts import make_context


@pytest.fixture
def resolver(bridge) -> ContextResolver:
    return ContextResolver(bridge)


@pytest.mark.asyncio
async def test_admin_resolves_with_assigned_role(resolver, tenant) -> None:
    ctx = await resolver.resolve(
        IdentityClaims(user_id=tenant.admin_user_id, tenant_id=tenant.tenant_id, correlation_id="req-9"),
        request=RequestMeta(method="GET", url="http://api/projects"),
    )

    assert ctx.roles == ("ADMIN",)
    assert ctx.actor_id == tenant.admin_user_id
    assert ctx.correlation_id == "req-9"
    assert ctx.request.method == "GET"
    assert ctx.permissions is None
    assert ctx.is_system is False


@pytest.mark.asyncio
async def test_roles_load_primary_first(resolver, provisioner, tenant) -> None:
    user_id = str(uuid4())
    await provisioner.add_member(tenant.tenant_id, user_id=user_id, roles=("DRIVER", "WORKER"))

    ctx = await resolver.resolve(IdentityClaims(user_id=user_id, tenant_id=tenant.tenant_id))

    assert ctx.roles == ("DRIVER", "WORKER")
    assert ctx.primary_role == "DRIVER"


@pytest.mark.asyncio
async def test_claimed_roles_only_narrow_assignments(resolver, provisioner, tenant) -> None:
    user_id = str(uuid4())
    await provisioner.add_member(tenant.tenant_id, user_id=user_id, roles=("WORKER", "DRIVER"))

    narrowed = await resolver.resolve(IdentityClaims(user_id=user_id, tenant_id=tenant.tenant_id, roles=("driver",)))
    escalated = await resolver.resolve(
        IdentityClaims(user_id=user_id, tenant_id=tenant.tenant_id, roles=("ADMIN", "SYSTEM_ADMIN"))
    )

    assert narrowed.roles == ("DRIVER",)
    assert escalated.roles == ()


@pytest.mark.asyncio
async def test_unknown_member_resolves_without_roles(resolver, tenant) -> None:
    ctx = await resolver.resolve(IdentityClaims(user_id=str(uuid4()), tenant_id=tenant.tenant_id))

    assert ctx.roles == ()


@pytest.mark.asyncio
async def test_membership_is_per_tenant(resolver, tenant, other_tenant) -> None:
    ctx = await resolver.resolve(IdentityClaims(user_id=tenant.admin_user_id, tenant_id=other_tenant.tenant_id))

    assert ctx.roles == ()


@pytest.mark.asyncio
async def test_unknown_or_malformed_tenant_is_unauthenticated(resolver, tenant) -> None:
    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(IdentityClaims(user_id=tenant.admin_user_id, tenant_id=str(uuid4())))
    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(IdentityClaims(user_id=tenant.admin_user_id, tenant_id="acme"))
    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(IdentityClaims(user_id=None, tenant_id=tenant.tenant_id))


@pytest.mark.asyncio
async def test_suspended_tenant_is_rejected(resolver, provisioner, tenant) -> None:
    await provisioner.set_status(tenant.tenant_id, TenantStatus.SUSPENDED)

    with pytest.raises(TenantInactiveError):
        await resolver.resolve(IdentityClaims(user_id=tenant.admin_user_id, tenant_id=tenant.tenant_id))


@pytest.mark.asyncio
async def test_permissions_can_be_resolved_eagerly(resolver, provisioner, tenant) -> None:
    user_id = str(uuid4())
    await provisioner.add_member(tenant.tenant_id, user_id=user_id, roles=("DRIVER",))

    ctx = await resolver.resolve(IdentityClaims(user_id=user_id, tenant_id=tenant.tenant_id), with_permissions=True)

    assert ctx.permissions == {
        "NumberSequence.generate",
        "NumberSequence.read",
        "NumberSequence.list",
        "Project.read",
        "Project.list",
    }


@pytest.mark.asyncio
async def test_resolve_permissions_for_existing_context(resolver, tenant) -> None:
    ctx = await resolver.resolve_permissions(make_context(tenant.tenant_id, "ADMIN"))

    assert "Project.purge" in ctx.permissions
    assert "Project.read" in ctx.permissions
    assert "Role.manage" in ctx.permissions
