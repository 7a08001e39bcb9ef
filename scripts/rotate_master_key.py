from __future__ import annotations

import argparse
import asyncio
import sys

from sqlbroker.core.config import get_settings
from sqlbroker.persistence.db import SessionLocal
from sqlbroker.services.crypto.envelope import build_cipher
from sqlbroker.services.maintenance import rewrap_connection_keys


def _build_parser() -> argparse.ArgumentParser:
    # The current key comes from MASTER_KEY; the new one is passed explicitly.
    parser = argparse.ArgumentParser(description="Re-wrap stored data keys under a new master key")
    parser.add_argument("--new-key", required=True, help="New 256-bit master key (hex or base64)")
    return parser


async def _rotate(new_key: str) -> int:
    current = build_cipher(get_settings().master_key)
    target = build_cipher(new_key)
    async with SessionLocal() as session:
        count = await rewrap_connection_keys(session, current=current, target=target)
        await session.commit()
    print(f"rewrapped_connections={count}")
    print("Update MASTER_KEY to the new key before restarting the broker.")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_rotate(args.new_key))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_master_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
