from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import re
from typing import Iterable
from uuid import UUID, uuid4

from tenantcore.core.errors import TenantInactiveError, UnauthenticatedError
from tenantcore.domain.models import TenantStatus


logger = logging.getLogger(__name__)

SYSTEM_ROLE = "SYSTEM_ADMIN"
# Roles that request claims may never carry; only trusted internal callers obtain them.
RESERVED_ROLES = frozenset({SYSTEM_ROLE})
_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Capability token guarding system context construction; never exported.
_SYSTEM_CAPABILITY = object()


@dataclass(frozen=True)
class Actor:
    user_id: str | None
    session_id: str | None = None
    email: str | None = None
    display_name: str | None = None
    actor_type: str = "user"


@dataclass(frozen=True)
class TenantScope:
    tenant_id: str
    status: str = TenantStatus.ACTIVE.value

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value


@dataclass(frozen=True)
class RequestMeta:
    method: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class IdentityClaims:
    # Verified identity as handed over by the authentication layer.
    user_id: str | None
    tenant_id: str | None
    roles: tuple[str, ...] = ()
    correlation_id: str | None = None
    session_id: str | None = None
    email: str | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class RequestContext:
    """Immutable per-operation context passed explicitly through every layer.

    ``roles`` keeps resolution order with the primary role first. ``permissions``
    stays ``None`` until resolved; use :meth:`with_permissions` to obtain a
    resolved copy. System contexts can only be created through
    :func:`system_context`.
    """

    actor: Actor
    tenant: TenantScope
    roles: tuple[str, ...]
    correlation_id: str
    permissions: frozenset[str] | None = None
    request: RequestMeta | None = None
    is_system: bool = False
    _capability: object | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.is_system and self._capability is not _SYSTEM_CAPABILITY:
            raise UnauthenticatedError("System context requires an internal capability")
        if not self.is_system and RESERVED_ROLES.intersection(self.roles):
            raise UnauthenticatedError("Reserved roles are not available to request contexts")

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def actor_id(self) -> str | None:
        return self.actor.user_id

    @property
    def primary_role(self) -> str | None:
        return self.roles[0] if self.roles else None

    @property
    def role_set(self) -> frozenset[str]:
        return frozenset(self.roles)

    def with_permissions(self, permissions: Iterable[str]) -> RequestContext:
        return replace(self, permissions=frozenset(permissions))


def normalize_roles(roles: Iterable[str]) -> tuple[str, ...]:
    # Upper-case, strip, de-duplicate while keeping first-seen order.
    normalized: list[str] = []
    for role in roles:
        code = str(role or "").strip().upper()
        if code and code not in normalized:
            normalized.append(code)
    return tuple(normalized)


def normalize_correlation_id(value: str | None) -> str:
    # Accept caller-supplied ids only when they are safe to log and propagate.
    if value and _CORRELATION_ID_PATTERN.match(value):
        return value
    return str(uuid4())


def require_uuid(value: str | None, label: str) -> str:
    if not value:
        raise UnauthenticatedError(f"Missing {label}")
    try:
        return str(UUID(str(value)))
    except ValueError as exc:
        raise UnauthenticatedError(f"Malformed {label}") from exc


def build_request_context(
    claims: IdentityClaims,
    tenant: TenantScope | None,
    *,
    request: RequestMeta | None = None,
) -> RequestContext:
    # Pure: verified claims plus the tenant's lifecycle state in, immutable context out.
    user_id = require_uuid(claims.user_id, "actor id")
    tenant_id = require_uuid(claims.tenant_id, "tenant id")
    if tenant is None or str(tenant.tenant_id) != tenant_id:
        raise UnauthenticatedError("Tenant could not be resolved")
    if not tenant.is_active:
        raise TenantInactiveError()

    roles = normalize_roles(claims.roles)
    reserved = [role for role in roles if role in RESERVED_ROLES]
    if reserved:
        logger.warning(
            "reserved_roles_dropped tenant_id=%s user_id=%s roles=%s",
            tenant_id,
            user_id,
            ",".join(reserved),
        )
        roles = tuple(role for role in roles if role not in RESERVED_ROLES)

    return RequestContext(
        actor=Actor(
            user_id=user_id,
            session_id=claims.session_id,
            email=claims.email,
            display_name=claims.display_name,
        ),
        tenant=TenantScope(tenant_id=tenant_id, status=tenant.status),
        roles=roles,
        correlation_id=normalize_correlation_id(claims.correlation_id),
        request=request,
    )


def system_context(tenant_id: str, *, purpose: str, correlation_id: str | None = None) -> RequestContext:
    """Context for internal bootstrap work such as tenant provisioning.

    Never build one from request input: it bypasses RBAC evaluation and carries
    the reserved system role into the session claims.
    """
    ctx = RequestContext(
        actor=Actor(user_id=None, display_name=f"system:{purpose}", actor_type="system"),
        tenant=TenantScope(tenant_id=str(tenant_id)),
        roles=(SYSTEM_ROLE,),
        correlation_id=normalize_correlation_id(correlation_id),
        is_system=True,
        _capability=_SYSTEM_CAPABILITY,
    )
    logger.info("system_context_created tenant_id=%s purpose=%s", tenant_id, purpose)
    return ctx
