from __future__ import annotations

import argparse
import asyncio
import sys

from sqlbroker.persistence.db import SessionLocal
from sqlbroker.persistence.repos import tenants as tenants_repo


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a tenant")
    parser.add_argument("--name", required=True, help="Human readable tenant name")
    parser.add_argument("--tenant-id", default=None, help="Explicit tenant id (generated when omitted)")
    return parser


async def _create(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await tenants_repo.create_tenant(session, name=args.name, tenant_id=args.tenant_id)
        await session.commit()
    print("Tenant created:")
    print(f"  tenant_id: {tenant.id}")
    print(f"  name: {tenant.name}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_create(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
