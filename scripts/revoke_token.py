from __future__ import annotations

import argparse
import asyncio
import sys

from sqlbroker.persistence.db import SessionLocal
from sqlbroker.services.tokens.service import revoke_token


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke a capability token")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--token-id", required=True, help="Token jti to revoke")
    return parser


async def _revoke(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        await revoke_token(session, tenant_id=args.tenant, jti=args.token_id)
    print(f"revoked token_id={args.token_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_revoke(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"revoke_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
