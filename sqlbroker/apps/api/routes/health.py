from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from sqlbroker.apps.api.deps import get_runtime
from sqlbroker.persistence.db import pool_stats
from sqlbroker.services.runtime import BrokerRuntime


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    cached_adapters: int
    store_pool: dict[str, int | None]


@router.get("/health")
async def health(runtime: BrokerRuntime = Depends(get_runtime)) -> HealthResponse:
    # Report cache size only; cache keys embed DSNs and are never exposed.
    stats = runtime.broker.stats()
    return HealthResponse(status="ok", cached_adapters=int(stats["adapters"]), store_pool=pool_stats())
