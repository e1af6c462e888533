"""row security helpers and per-table tenant policies

Revision ID: 0002_row_security
Revises: 0001_init
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op

from tenantcore.persistence.rls import (
    AUDIT_TABLE,
    default_table_policies,
    render_drop_table_policies,
    render_row_security,
)


revision = "0002_row_security"
down_revision = "0001_init"
branch_labels = None
depends_on = None

# Role codes frozen at this revision; catalog changes that add roles ship a new revision.
ROLE_CODES = ("SYSTEM_ADMIN", "ADMIN", "PROJECT_MANAGER", "WORKER", "DRIVER", "VIEWER")
ADMIN_ROLE_CODES = ("SYSTEM_ADMIN", "ADMIN")
DB_ROLE = "authenticated"
CLAIMS_SETTING = "request.jwt.claims"


def upgrade() -> None:
    policies = default_table_policies(ROLE_CODES, ADMIN_ROLE_CODES)
    for statement in render_row_security(policies, claims_setting=CLAIMS_SETTING, db_role=DB_ROLE):
        op.execute(statement)


def downgrade() -> None:
    for policy in default_table_policies(ROLE_CODES, ADMIN_ROLE_CODES):
        for statement in render_drop_table_policies(policy.table):
            op.execute(statement)
    for statement in render_drop_table_policies(AUDIT_TABLE):
        op.execute(statement)
    op.execute(f"GRANT UPDATE, DELETE ON public.{AUDIT_TABLE} TO {DB_ROLE}")
    op.execute("DROP SCHEMA IF EXISTS app CASCADE")
