from __future__ import annotations

import argparse
import asyncio

from tenantcore.authz.catalog import load_catalog
from tenantcore.core.config import get_settings
from tenantcore.core.logging import configure_logging
from tenantcore.persistence.db import create_engine, create_session_factory
from tenantcore.persistence.isolation import IsolationBridge
from tenantcore.services.audit import AuditRecorder, DatabaseAuditSink
from tenantcore.services.provisioning import TenantProvisioner


async def _run(args: argparse.Namespace) -> None:
    settings = get_settings()
    engine = create_engine(settings)
    try:
        session_factory = create_session_factory(engine)
        bridge = IsolationBridge(session_factory, settings=settings)
        provisioner = TenantProvisioner(
            bridge,
            audit=AuditRecorder(DatabaseAuditSink.from_bridge(bridge)),
            catalog=load_catalog(args.catalog),
        )
        if args.create:
            created = await provisioner.provision(
                name=args.name or args.slug,
                slug=args.slug,
                admin_user_id=args.admin_user_id,
                admin_email=args.admin_email,
            )
            print(f"tenant_id={created.tenant_id} roles={','.join(created.roles)}")
            return
        roles = await provisioner.sync_catalog(args.tenant_id)
        print(f"tenant_id={args.tenant_id} roles={','.join(roles)}")
    finally:
        await engine.dispose()


def main() -> None:
    # Seed catalog permissions, roles and grants for a new or existing tenant.
    parser = argparse.ArgumentParser(description="Seed RBAC tables from the permission catalog")
    parser.add_argument("--catalog", default=None)
    sub = parser.add_subparsers(dest="command", required=True)
    sync = sub.add_parser("sync", help="re-apply the catalog to an existing tenant")
    sync.add_argument("tenant_id")
    create = sub.add_parser("create", help="provision a tenant with an initial admin")
    create.add_argument("--slug", required=True)
    create.add_argument("--name", default=None)
    create.add_argument("--admin-user-id", required=True)
    create.add_argument("--admin-email", default=None)
    args = parser.parse_args()
    args.create = args.command == "create"
    configure_logging()
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
