from __future__ import annotations

import asyncio
import sys

from sqlbroker.persistence.db import init_models


async def _init() -> int:
    await init_models()
    print("credential store schema ready")
    return 0


def main() -> int:
    try:
        return asyncio.run(_init())
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"init_db failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
