from __future__ import annotations

import argparse
import asyncio
import sys

from sqlbroker.core.config import get_settings
from sqlbroker.persistence.db import SessionLocal
from sqlbroker.services.tokens.claims import GRANT_PRESETS
from sqlbroker.services.tokens.service import issue_token
from sqlbroker.services.tokens.signing import build_signer


def _build_parser() -> argparse.ArgumentParser:
    # Operator bootstrap issuance; derived tokens are minted over the API.
    parser = argparse.ArgumentParser(description="Issue a capability token for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument(
        "--connection",
        action="append",
        required=True,
        dest="connections",
        help="Connection id to grant (repeatable, '*' for all)",
    )
    parser.add_argument("--preset", choices=sorted(GRANT_PRESETS), default="read_only")
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    return parser


async def _issue(args: argparse.Namespace) -> int:
    settings = get_settings()
    signer = build_signer(settings)
    async with SessionLocal() as session:
        issued = await issue_token(
            session,
            signer=signer,
            tenant_id=args.tenant,
            connection_ids=args.connections,
            permissions=GRANT_PRESETS[args.preset](),
            ttl_s=args.ttl if args.ttl is not None else settings.token_default_ttl_s,
        )
    print("Capability token issued:")
    print(f"  token_id: {issued.claims.jti}")
    print(f"  expires_at: {issued.expires_at.isoformat()}")
    print("  token:")
    print(f"    {issued.token}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_issue(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"issue_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
