from __future__ import annotations

import asyncio

from sqlbroker.persistence.db import SessionLocal
from sqlbroker.services.maintenance import prune_expired_tokens


async def prune() -> int:
    async with SessionLocal() as session:
        deleted = await prune_expired_tokens(session)
        await session.commit()
        print(f"pruned_expired_tokens={deleted}")
    return deleted


if __name__ == "__main__":
    asyncio.run(prune())
