from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
from typing import Any

import yaml

from tenantcore.authz.hierarchy import RoleGraph
from tenantcore.core.config import get_settings
from tenantcore.core.errors import InvalidRequestError


PERMISSION_CODE_PATTERN = re.compile(r"^[A-Z][A-Za-z0-9]*\.[a-z][A-Za-z0-9]*$")
ROLE_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")
_ROLE_SCOPES = {"tenant", "system"}


class CatalogError(InvalidRequestError):
    """Permission catalog document is malformed."""

    code = "CATALOG_INVALID"


@dataclass(frozen=True)
class RoleDefinition:
    code: str
    name: str
    scope: str = "tenant"
    priority: int = 0
    inherits: tuple[str, ...] = ()


@dataclass(frozen=True)
class PermissionDefinition:
    code: str
    category: str

    @property
    def resource(self) -> str:
        return self.code.split(".", 1)[0]

    @property
    def action(self) -> str:
        return self.code.split(".", 1)[1]


@dataclass(frozen=True)
class PermissionCatalog:
    version: int
    description: str
    roles: dict[str, RoleDefinition]
    # Direct grants per role, in document order; inheritance is resolved at evaluation time.
    grants: dict[str, tuple[str, ...]]
    permissions: dict[str, PermissionDefinition] = field(default_factory=dict)

    @property
    def tenant_roles(self) -> list[RoleDefinition]:
        # Roles seeded into every tenant; system-scope roles never are.
        return [role for role in self.roles.values() if role.scope == "tenant"]

    def hierarchy(self) -> RoleGraph:
        return RoleGraph({code: role.inherits for code, role in self.roles.items()})

    def permission_codes(self) -> list[str]:
        return sorted(self.permissions)


def load_catalog(path: str | Path | None = None) -> PermissionCatalog:
    # Read and validate the YAML catalog; defaults to the configured location.
    source = Path(path or get_settings().rbac_catalog_path)
    with source.open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle)
    return parse_catalog(document)


def parse_catalog(document: Any) -> PermissionCatalog:
    if not isinstance(document, dict):
        raise CatalogError("Catalog must be a mapping")
    version = document.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise CatalogError("Catalog version must be a positive integer")

    roles = _parse_roles(document.get("roles"))
    grants, permissions = _parse_permissions(document.get("permissions") or {}, roles)
    catalog = PermissionCatalog(
        version=version,
        description=str(document.get("description") or ""),
        roles=roles,
        grants=grants,
        permissions=permissions,
    )
    # RoleGraph raises on cycles in the declared inheritance.
    catalog.hierarchy()
    return catalog


def _parse_roles(raw: Any) -> dict[str, RoleDefinition]:
    if not isinstance(raw, dict) or not raw:
        raise CatalogError("Catalog must declare at least one role")
    roles: dict[str, RoleDefinition] = {}
    for code, entry in raw.items():
        if not isinstance(code, str) or not ROLE_CODE_PATTERN.match(code):
            raise CatalogError(f"Invalid role code: {code!r}")
        entry = entry or {}
        if not isinstance(entry, dict):
            raise CatalogError(f"Role {code} must be a mapping")
        scope = entry.get("scope", "tenant")
        if scope not in _ROLE_SCOPES:
            raise CatalogError(f"Role {code} has unsupported scope {scope!r}")
        inherits = entry.get("inherits") or []
        if not isinstance(inherits, list):
            raise CatalogError(f"Role {code} inherits must be a list")
        roles[code] = RoleDefinition(
            code=code,
            name=str(entry.get("name") or code),
            scope=scope,
            priority=int(entry.get("priority", 0)),
            inherits=tuple(str(parent) for parent in inherits),
        )
    for role in roles.values():
        for parent in role.inherits:
            if parent not in roles:
                raise CatalogError(f"Role {role.code} inherits unknown role {parent}")
    return roles


def _parse_permissions(
    raw: Any, roles: dict[str, RoleDefinition]
) -> tuple[dict[str, tuple[str, ...]], dict[str, PermissionDefinition]]:
    if not isinstance(raw, dict):
        raise CatalogError("Catalog permissions must be a mapping of role -> domain -> codes")
    grants: dict[str, tuple[str, ...]] = {code: () for code in roles}
    permissions: dict[str, PermissionDefinition] = {}
    for role_code, domains in raw.items():
        if role_code not in roles:
            raise CatalogError(f"Permissions declared for unknown role {role_code}")
        if not isinstance(domains, dict):
            raise CatalogError(f"Permissions for {role_code} must be grouped by domain")
        codes: list[str] = []
        for category, entries in domains.items():
            for entry in entries or []:
                if not isinstance(entry, str) or not PERMISSION_CODE_PATTERN.match(entry):
                    raise CatalogError(f"Invalid permission code {entry!r} for {role_code}")
                known = permissions.get(entry)
                if known is not None and known.category != category:
                    raise CatalogError(
                        f"Permission {entry} listed under both {known.category} and {category}"
                    )
                permissions[entry] = PermissionDefinition(code=entry, category=str(category))
                if entry not in codes:
                    codes.append(entry)
        grants[role_code] = tuple(codes)
    return grants, permissions


def enum_member_name(code: str) -> str:
    # "NumberSequence.generate" -> "NUMBER_SEQUENCE_GENERATE"
    resource, action = code.split(".", 1)
    words = re.findall(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])", resource + action[:1].upper() + action[1:])
    return "_".join(word.upper() for word in words)


def render_permission_codes_module(catalog: PermissionCatalog) -> str:
    # Source text for tenantcore/authz/permission_codes.py.
    lines = [
        "# Generated from authz/catalog/rbac.catalog.yml by scripts/generate_permission_codes.py.",
        "# Do not edit by hand; regenerate after changing the catalog.",
        "from __future__ import annotations",
        "",
        "from enum import StrEnum",
        "",
        "from tenantcore.core.errors import UnknownPermissionError",
        "",
        "",
        f"CATALOG_VERSION = {catalog.version}",
        "",
        "",
        "class PermissionCode(StrEnum):",
    ]
    for code in catalog.permission_codes():
        lines.append(f'    {enum_member_name(code)} = "{code}"')
    lines += ["", "", "# Direct grants per role as declared in the catalog.", "ROLE_GRANTS: dict[str, tuple[PermissionCode, ...]] = {"]
    for role_code, codes in catalog.grants.items():
        members = ", ".join(f"PermissionCode.{enum_member_name(code)}" for code in codes)
        if codes:
            lines.append(f'    "{role_code}": ({members},),')
        else:
            lines.append(f'    "{role_code}": (),')
    lines += [
        "}",
        "",
        "",
        "def parse_permission(value: str | PermissionCode) -> PermissionCode:",
        "    # Closed set: anything outside the catalog is rejected.",
        "    try:",
        "        return PermissionCode(value)",
        "    except ValueError as exc:",
        '        raise UnknownPermissionError(f"Unknown permission code: {value}") from exc',
        "",
    ]
    return "\n".join(lines)
