from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator, Callable

from sqlbroker.core.errors import BackendUnavailableError, BrokerError
from sqlbroker.services.broker.adapters.base import Adapter, PoolLimits
from sqlbroker.services.broker.adapters.factory import build_adapter
from sqlbroker.services.broker.dialects import Dialect


logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Dialect, str, PoolLimits], Adapter]


def cache_key(dialect: Dialect, dsn: str) -> str:
    return f"{dialect.value}|{dsn}"


class ConnectionBroker:
    """Process-scoped cache of live backend adapters keyed by ``dialect|dsn``.

    Entries are shared across tenants; tenant isolation is enforced before a
    DSN ever reaches the broker. The broker exclusively owns cached adapters
    and is the only component that closes them.

    ``_lock`` guards the mapping and is held only for lookup and insert. A miss
    takes a per-key initialization lock, so one slow connect never blocks
    resolution of unrelated keys and concurrent misses on the same key
    construct exactly one adapter.

    Callers that run work on an adapter hold it through ``lease``. An evicted
    adapter leaves the cache at once but is closed only after its last lease is
    released, so work in flight for other holders of the same DSN completes.
    """

    def __init__(self, *, limits: PoolLimits | None = None, factory: AdapterFactory = build_adapter) -> None:
        self.limits = limits or PoolLimits.from_settings()
        self._factory = factory
        self._adapters: dict[str, Adapter] = {}
        self._init_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()
        # Keyed by id(); adapters are not required to be hashable.
        self._leases: dict[int, int] = {}
        self._retired: dict[int, Adapter] = {}

    async def resolve(self, dialect: Dialect | str, dsn: str) -> Adapter:
        return await self._resolve(dialect, dsn, hold=False)

    @asynccontextmanager
    async def lease(self, dialect: Dialect | str, dsn: str) -> AsyncIterator[Adapter]:
        adapter = await self._resolve(dialect, dsn, hold=True)
        try:
            yield adapter
        finally:
            await self._release(adapter)

    async def _resolve(self, dialect: Dialect | str, dsn: str, *, hold: bool) -> Adapter:
        resolved = Dialect.parse(dialect)
        key = cache_key(resolved, dsn)
        async with self._lock:
            adapter = self._adapters.get(key)
            if adapter is not None:
                return self._hold(adapter) if hold else adapter
            init_lock = self._init_locks.setdefault(key, asyncio.Lock())

        async with init_lock:
            async with self._lock:
                adapter = self._adapters.get(key)
                if adapter is not None:
                    return self._hold(adapter) if hold else adapter
            try:
                adapter = await self._construct(resolved, dsn)
            except BaseException:
                # A failed construction leaves no init lock behind; no await between check and delete.
                if self._init_locks.get(key) is init_lock:
                    del self._init_locks[key]
                raise
            async with self._lock:
                self._adapters[key] = adapter
                self._init_locks.pop(key, None)
                if hold:
                    self._hold(adapter)
        logger.info("broker_adapter_created dialect=%s cached=%s", resolved.value, len(self._adapters))
        return adapter

    def _hold(self, adapter: Adapter) -> Adapter:
        # Caller holds self._lock.
        self._leases[id(adapter)] = self._leases.get(id(adapter), 0) + 1
        return adapter

    async def _release(self, adapter: Adapter) -> None:
        async with self._lock:
            remaining = self._leases.get(id(adapter), 0) - 1
            if remaining > 0:
                self._leases[id(adapter)] = remaining
                return
            self._leases.pop(id(adapter), None)
            retired = self._retired.pop(id(adapter), None)
        if retired is not None:
            await self._close_quietly(retired)
            logger.info("broker_adapter_retired dialect=%s", retired.dialect.value)

    async def _construct(self, dialect: Dialect, dsn: str) -> Adapter:
        try:
            adapter = self._factory(dialect, dsn, self.limits)
        except BrokerError:
            raise
        except Exception as exc:
            logger.warning("broker_adapter_construct_failed dialect=%s", dialect.value, exc_info=exc)
            raise BackendUnavailableError(f"could not construct {dialect.value} adapter") from exc
        try:
            await asyncio.wait_for(adapter.health_check(), timeout=self.limits.connect_timeout_s)
        except Exception as exc:
            logger.warning("broker_adapter_health_check_failed dialect=%s", dialect.value, exc_info=exc)
            await self._close_quietly(adapter)
            raise BackendUnavailableError(f"{dialect.value} backend is unreachable") from exc
        return adapter

    async def _close_quietly(self, adapter: Adapter) -> None:
        try:
            await adapter.close()
        except Exception as exc:
            logger.warning("broker_adapter_close_failed dialect=%s", adapter.dialect.value, exc_info=exc)

    async def evict(self, dialect: Dialect | str, dsn: str) -> bool:
        # Drop one entry, e.g. after its connection definition changes or goes away.
        key = cache_key(Dialect.parse(dialect), dsn)
        async with self._lock:
            adapter = self._adapters.pop(key, None)
            if adapter is None:
                return False
            if self._leases.get(id(adapter)):
                self._retired[id(adapter)] = adapter
                logger.info("broker_adapter_evicted dialect=%s deferred_close=true", adapter.dialect.value)
                return True
        await adapter.close()
        logger.info("broker_adapter_evicted dialect=%s", adapter.dialect.value)
        return True

    async def close_all(self) -> None:
        """Close every cached adapter; all are attempted and the first error is re-raised."""
        async with self._lock:
            adapters = [*self._adapters.values(), *self._retired.values()]
            self._adapters.clear()
            self._retired.clear()
            self._leases.clear()
            self._init_locks.clear()
        first_error: Exception | None = None
        for adapter in adapters:
            try:
                await adapter.close()
            except Exception as exc:
                logger.warning("broker_adapter_close_failed dialect=%s", adapter.dialect.value, exc_info=exc)
                if first_error is None:
                    first_error = exc
        logger.info("broker_closed adapters=%s", len(adapters))
        if first_error is not None:
            raise first_error

    def stats(self) -> dict[str, object]:
        dialects = Counter(adapter.dialect.value for adapter in self._adapters.values())
        return {"adapters": len(self._adapters), "by_dialect": dict(dialects), "retired": len(self._retired)}
