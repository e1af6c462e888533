from __future__ import annotations

import argparse
from pathlib import Path
import sys

from tenantcore.authz.catalog import load_catalog, render_permission_codes_module


DEFAULT_OUTPUT = Path(__file__).resolve().parent.parent / "tenantcore" / "authz" / "permission_codes.py"


def main() -> int:
    # Regenerate the closed PermissionCode enum from the YAML catalog.
    parser = argparse.ArgumentParser(description="Generate tenantcore/authz/permission_codes.py from the catalog")
    parser.add_argument("--catalog", default=None, help="catalog path (defaults to settings)")
    parser.add_argument("--output", default=str(DEFAULT_OUTPUT))
    parser.add_argument("--check", action="store_true", help="fail when the generated module is stale")
    args = parser.parse_args()

    catalog = load_catalog(args.catalog)
    rendered = render_permission_codes_module(catalog)
    output = Path(args.output)
    if args.check:
        current = output.read_text(encoding="utf-8") if output.exists() else ""
        if current != rendered:
            print(f"permission_codes_stale output={output} catalog_version={catalog.version}")
            return 1
        print(f"permission_codes_current catalog_version={catalog.version}")
        return 0
    output.write_text(rendered, encoding="utf-8")
    print(f"permission_codes_written output={output} codes={len(catalog.permissions)} version={catalog.version}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
