"""Row security artifacts for PostgreSQL.

Renders the ``app`` helper functions that read the transaction-local claims
and one permissive policy per table per verb. SELECT and UPDATE-USING rules
hide soft-deleted rows; INSERT, UPDATE-CHECK and DELETE rules do not, so a
soft delete can write ``deleted_at`` and a purge can remove the row. The
audit table only admits tenant-scoped reads and inserts.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable

from tenantcore.domain.models import TENANT_SCOPED_TABLES, AuditEvent


_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_SETTING_NAME = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)+$")
_ROLE_CODE = re.compile(r"^[A-Z][A-Z0-9_]*$")
VERBS = ("select", "insert", "update", "delete")
# RBAC tables are writable only by administrators; everyone in the tenant may read them.
RBAC_TABLES = frozenset({"roles", "role_parents", "role_permissions", "members", "member_roles"})
# Append-only: tenant-scoped reads and inserts, no updates or deletes for the session role.
AUDIT_TABLE = AuditEvent.__tablename__


@dataclass(frozen=True)
class TablePolicy:
    table: str
    soft_delete: bool
    read_roles: tuple[str, ...]
    write_roles: tuple[str, ...]

    def roles_for(self, verb: str) -> tuple[str, ...]:
        return self.read_roles if verb == "select" else self.write_roles


def _identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"Invalid SQL identifier: {value!r}")
    return value


def _role_array(roles: Iterable[str]) -> str:
    codes = []
    for role in roles:
        if not _ROLE_CODE.match(role):
            raise ValueError(f"Invalid role code: {role!r}")
        codes.append(f"'{role}'")
    return f"ARRAY[{', '.join(codes)}]::text[]"


def render_helper_functions(claims_setting: str = "request.jwt.claims") -> list[str]:
    if not _SETTING_NAME.match(claims_setting):
        raise ValueError(f"Invalid claims setting name: {claims_setting!r}")
    return [
        "CREATE SCHEMA IF NOT EXISTS app",
        f"""
CREATE OR REPLACE FUNCTION app.jwt() RETURNS jsonb
LANGUAGE sql STABLE AS $$
  SELECT COALESCE(NULLIF(current_setting('{claims_setting}', true), ''), '{{}}')::jsonb
$$""",
        """
CREATE OR REPLACE FUNCTION app.current_tenant_id() RETURNS text
LANGUAGE sql STABLE AS $$
  SELECT NULLIF(app.jwt() ->> 'tenant_id', '')
$$""",
        """
CREATE OR REPLACE FUNCTION app.current_user_id() RETURNS text
LANGUAGE sql STABLE AS $$
  SELECT NULLIF(app.jwt() ->> 'user_id', '')
$$""",
        """
CREATE OR REPLACE FUNCTION app.current_roles() RETURNS text[]
LANGUAGE sql STABLE AS $$
  SELECT COALESCE(
    array_remove(string_to_array(COALESCE(app.jwt() ->> 'roles', ''), ','), ''),
    ARRAY[]::text[]
  )
$$""",
        """
CREATE OR REPLACE FUNCTION app.has_any_role(required text[]) RETURNS boolean
LANGUAGE sql STABLE AS $$
  SELECT app.current_roles() && required
$$""",
        """
CREATE OR REPLACE FUNCTION app.deleted_rows_visible() RETURNS boolean
LANGUAGE sql STABLE AS $$
  SELECT COALESCE(current_setting('app.deleted_rows_visible', true), '') = 'on'
$$""",
    ]


def render_role_setup(db_role: str = "authenticated") -> list[str]:
    role = _identifier(db_role)
    return [
        f"""
DO $$
BEGIN
  IF NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = '{role}') THEN
    CREATE ROLE {role} NOLOGIN;
  END IF;
END
$$""",
        f"GRANT {role} TO CURRENT_USER",
        f"GRANT USAGE ON SCHEMA public, app TO {role}",
        f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public TO {role}",
        f"GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA public TO {role}",
        f"GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA app TO {role}",
    ]


def _policy_name(verb: str, table: str) -> str:
    return f"tc_{verb}_{table}"


def _scope(policy: TablePolicy, verb: str) -> str:
    return f"app.has_any_role({_role_array(policy.roles_for(verb))}) AND tenant_id = app.current_tenant_id()"


def render_table_policies(policy: TablePolicy, *, db_role: str = "authenticated") -> list[str]:
    table = _identifier(policy.table)
    role = _identifier(db_role)
    statements = [
        f"ALTER TABLE public.{table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE public.{table} FORCE ROW LEVEL SECURITY",
    ]
    for verb in VERBS:
        statements.append(f"DROP POLICY IF EXISTS {_policy_name(verb, table)} ON public.{table}")

    scope_select = _scope(policy, "select")
    scope_write = _scope(policy, "update")
    if policy.soft_delete:
        # Deleted rows are visible only while a soft delete or purge statement runs.
        select_using = f"{scope_select} AND (deleted_at IS NULL OR app.deleted_rows_visible())"
        update_using = f"{scope_write} AND deleted_at IS NULL"
    else:
        select_using = scope_select
        update_using = scope_write
    head = "AS PERMISSIVE FOR {verb} TO " + role

    statements.append(
        f"CREATE POLICY {_policy_name('select', table)} ON public.{table} "
        f"{head.format(verb='SELECT')} USING ({select_using})"
    )
    statements.append(
        f"CREATE POLICY {_policy_name('insert', table)} ON public.{table} "
        f"{head.format(verb='INSERT')} WITH CHECK ({_scope(policy, 'insert')})"
    )
    statements.append(
        f"CREATE POLICY {_policy_name('update', table)} ON public.{table} "
        f"{head.format(verb='UPDATE')} USING ({update_using}) WITH CHECK ({scope_write})"
    )
    statements.append(
        f"CREATE POLICY {_policy_name('delete', table)} ON public.{table} "
        f"{head.format(verb='DELETE')} USING ({_scope(policy, 'delete')})"
    )
    return statements


def render_audit_policies(table: str = AUDIT_TABLE, *, db_role: str = "authenticated") -> list[str]:
    table = _identifier(table)
    role = _identifier(db_role)
    scope = "tenant_id = app.current_tenant_id()"
    statements = [
        f"ALTER TABLE public.{table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE public.{table} FORCE ROW LEVEL SECURITY",
    ]
    statements += [f"DROP POLICY IF EXISTS {_policy_name(verb, table)} ON public.{table}" for verb in VERBS]
    statements += [
        f"REVOKE UPDATE, DELETE, TRUNCATE ON public.{table} FROM {role}",
        f"CREATE POLICY {_policy_name('select', table)} ON public.{table} "
        f"AS PERMISSIVE FOR SELECT TO {role} USING ({scope})",
        f"CREATE POLICY {_policy_name('insert', table)} ON public.{table} "
        f"AS PERMISSIVE FOR INSERT TO {role} WITH CHECK ({scope})",
    ]
    return statements


def render_drop_table_policies(table: str) -> list[str]:
    table = _identifier(table)
    statements = [f"DROP POLICY IF EXISTS {_policy_name(verb, table)} ON public.{table}" for verb in VERBS]
    statements += [
        f"ALTER TABLE public.{table} NO FORCE ROW LEVEL SECURITY",
        f"ALTER TABLE public.{table} DISABLE ROW LEVEL SECURITY",
    ]
    return statements


def default_table_policies(all_roles: Iterable[str], admin_roles: Iterable[str]) -> list[TablePolicy]:
    # Every catalog role may touch business tables; RBAC writes are admin-only.
    readers = tuple(all_roles)
    admins = tuple(admin_roles)
    return [
        TablePolicy(
            table=table,
            soft_delete=soft_delete,
            read_roles=readers,
            write_roles=admins if table in RBAC_TABLES else readers,
        )
        for table, soft_delete in TENANT_SCOPED_TABLES.items()
    ]


def render_row_security(
    policies: Iterable[TablePolicy],
    *,
    claims_setting: str = "request.jwt.claims",
    db_role: str = "authenticated",
) -> list[str]:
    statements = render_helper_functions(claims_setting)
    statements += render_role_setup(db_role)
    for policy in policies:
        statements += render_table_policies(policy, db_role=db_role)
    # After the blanket table grant so the revoke sticks.
    statements += render_audit_policies(db_role=db_role)
    return statements
