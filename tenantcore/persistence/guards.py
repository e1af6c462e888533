from __future__ import annotations

from tenantcore.core.config import get_settings
from tenantcore.core.errors import TenancyError


class TenantPredicateError(TenancyError):
    """Repository query was about to run without a tenant predicate."""

    code = "TENANT_PREDICATE_REQUIRED"
    http_status = 500


def require_tenant_id(tenant_id: str | None) -> None:
    # Enforce non-empty tenant identifiers when tenant guard checks are enabled.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper; row security applies on top.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
