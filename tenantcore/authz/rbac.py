from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Iterable

from tenantcore.authz.hierarchy import RoleGraph
from tenantcore.authz.permission_codes import PermissionCode, parse_permission
from tenantcore.core.clock import as_utc
from tenantcore.domain.context import RequestContext


class Decision(StrEnum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class DecisionReason(StrEnum):
    SYSTEM = "system"
    GRANTED = "granted"
    EXPLICIT_DENY = "explicit_deny"
    NO_MATCHING_GRANT = "no_matching_grant"
    TENANT_MISMATCH = "tenant_mismatch"


@dataclass(frozen=True)
class ResourceRef:
    type: str
    id: str | None = None


@dataclass(frozen=True)
class RoleRecord:
    code: str
    is_active: bool = True
    priority: int = 0


@dataclass(frozen=True)
class GrantRecord:
    role_code: str
    permission_code: str
    is_denied: bool = False
    resource_type: str | None = None
    resource_id: str | None = None
    is_active: bool = True
    effective_from: datetime | None = None
    deactivated_at: datetime | None = None

    def is_effective(self, at: datetime) -> bool:
        if not self.is_active:
            return False
        start = as_utc(self.effective_from)
        if start is not None and start > at:
            return False
        end = as_utc(self.deactivated_at)
        return end is None or end > at

    def matches(self, permission: str, resource: ResourceRef | None) -> bool:
        if self.permission_code != permission:
            return False
        # Unscoped grants cover every resource; scoped grants need the exact scope.
        if self.resource_type is None:
            return True
        if resource is None or resource.type != self.resource_type:
            return False
        return self.resource_id is None or self.resource_id == resource.id


@dataclass(frozen=True)
class EffectiveGrant:
    grant: GrantRecord
    # Role the context holds that this grant reached; differs from grant.role_code when inherited.
    via_role: str


@dataclass(frozen=True)
class AuthorizationDecision:
    decision: Decision
    permission: str
    reason: DecisionReason
    matched_role: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


class GrantSnapshot:
    """One tenant's role and grant data, loaded once per operation.

    Effective grants per role (direct grants plus ancestors' active, non-denied
    grants) are resolved in topological order when the snapshot is built, so a
    fresh snapshot always reflects the current grant tables.
    """

    def __init__(
        self,
        tenant_id: str,
        roles: Iterable[RoleRecord],
        grants: Iterable[GrantRecord],
        *,
        edges: Iterable[tuple[str, str]] = (),
        as_of: datetime,
    ) -> None:
        self.tenant_id = tenant_id
        self.as_of = as_utc(as_of)
        self._roles = {role.code: role for role in roles}
        active = {code for code, role in self._roles.items() if role.is_active}
        # Inactive roles neither grant nor pass grants down to descendants.
        self.graph = RoleGraph.from_edges(
            ((child, parent) for child, parent in edges if child in active and parent in active),
            roles=active,
        )
        direct: dict[str, list[GrantRecord]] = {code: [] for code in active}
        for grant in grants:
            if grant.role_code in direct and grant.is_effective(self.as_of):
                direct[grant.role_code].append(grant)

        self._effective: dict[str, tuple[GrantRecord, ...]] = {}
        for code in self.graph.topological_order():
            resolved = list(direct.get(code, []))
            for parent in sorted(self.graph.parents(code)):
                resolved.extend(g for g in self._effective.get(parent, ()) if not g.is_denied and g not in resolved)
            self._effective[code] = tuple(resolved)

    def role_priority(self, code: str) -> int:
        role = self._roles.get(code)
        return role.priority if role else 0

    def effective_grants(self, role_code: str) -> tuple[GrantRecord, ...]:
        return self._effective.get(role_code, ())

    def grants_for(self, role_codes: Iterable[str]) -> list[EffectiveGrant]:
        return [
            EffectiveGrant(grant=grant, via_role=code)
            for code in role_codes
            for grant in self.effective_grants(code)
        ]

    def permissions_for(self, role_codes: Iterable[str]) -> frozenset[str]:
        # Unscoped permissions the role set holds after deny precedence.
        collected = self.grants_for(role_codes)
        denied = {item.grant.permission_code for item in collected if item.grant.is_denied and item.grant.resource_type is None}
        allowed = {item.grant.permission_code for item in collected if not item.grant.is_denied and item.grant.resource_type is None}
        return frozenset(allowed - denied)


def authorize(
    ctx: RequestContext,
    permission: str | PermissionCode,
    resource: ResourceRef | None = None,
    *,
    snapshot: GrantSnapshot,
) -> AuthorizationDecision:
    # Deny wins over allow; no matching row means deny.
    code = parse_permission(permission).value
    if ctx.is_system:
        return AuthorizationDecision(Decision.ALLOW, code, DecisionReason.SYSTEM)
    if snapshot.tenant_id != ctx.tenant_id:
        return AuthorizationDecision(Decision.DENY, code, DecisionReason.TENANT_MISMATCH)

    matched = [item for item in snapshot.grants_for(ctx.roles) if item.grant.matches(code, resource)]
    denials = [item for item in matched if item.grant.is_denied]
    if denials:
        return AuthorizationDecision(
            Decision.DENY, code, DecisionReason.EXPLICIT_DENY, _deciding_role(denials, snapshot)
        )
    if matched:
        return AuthorizationDecision(Decision.ALLOW, code, DecisionReason.GRANTED, _deciding_role(matched, snapshot))
    return AuthorizationDecision(Decision.DENY, code, DecisionReason.NO_MATCHING_GRANT)


def effective_permissions(ctx: RequestContext, snapshot: GrantSnapshot) -> frozenset[str]:
    # System contexts hold the whole catalog.
    if ctx.is_system:
        return frozenset(code.value for code in PermissionCode)
    if snapshot.tenant_id != ctx.tenant_id:
        return frozenset()
    return snapshot.permissions_for(ctx.roles)


def _deciding_role(items: list[EffectiveGrant], snapshot: GrantSnapshot) -> str:
    # Priority only orders reporting; it never changes the outcome.
    return max(items, key=lambda item: snapshot.role_priority(item.via_role)).via_role
