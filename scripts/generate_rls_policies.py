from __future__ import annotations

import argparse

from tenantcore.authz.catalog import load_catalog
from tenantcore.core.config import get_settings
from tenantcore.persistence.rls import default_table_policies, render_row_security


def main() -> None:
    # Print the row security SQL for review or manual application.
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Render row security helpers and policies as SQL")
    parser.add_argument("--catalog", default=None)
    parser.add_argument("--db-role", default=settings.db_session_role or "authenticated")
    parser.add_argument("--admin-role", action="append", default=None, help="roles allowed to write RBAC tables")
    args = parser.parse_args()

    catalog = load_catalog(args.catalog)
    admin_roles = args.admin_role or [code for code, role in catalog.roles.items() if role.scope == "system"] + ["ADMIN"]
    policies = default_table_policies(list(catalog.roles), admin_roles)
    for statement in render_row_security(policies, claims_setting=settings.db_claims_setting, db_role=args.db_role):
        print(statement.strip() + ";\n")


if __name__ == "__main__":
    main()
