from __future__ import annotations

import asyncio

import pytest

from sqlbroker.core.errors import BackendUnavailableError, InvalidDialectError
from sqlbroker.services.broker.adapters.base import PoolLimits
from sqlbroker.services.broker.dialects import Dialect
from sqlbroker.services.broker.manager import ConnectionBroker, cache_key
from sqlbroker.tests.utils.broker import FakeAdapter, RecordingFactory


_LIMITS = PoolLimits(max_open=3, max_idle=1, connect_timeout_s=1.0)


def test_dialect_parsing_accepts_aliases_and_rejects_unknown() -> None:
    assert Dialect.parse("postgres") is Dialect.POSTGRESQL
    assert Dialect.parse(" SQLite ") is Dialect.SQLITE
    assert Dialect.parse(Dialect.DUCKDB) is Dialect.DUCKDB
    with pytest.raises(InvalidDialectError):
        Dialect.parse("mysql")


def test_cache_key_includes_dialect() -> None:
    assert cache_key(Dialect.SQLITE, "file.db") != cache_key(Dialect.DUCKDB, "file.db")


@pytest.mark.asyncio
async def test_same_key_returns_same_adapter() -> None:
    factory = RecordingFactory()
    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    first = await broker.resolve("postgresql", "postgres://u:p@h/db")
    second = await broker.resolve(Dialect.POSTGRESQL, "postgres://u:p@h/db")
    assert first is second
    assert len(factory.built) == 1
    assert first.health_checks == 1


@pytest.mark.asyncio
async def test_distinct_dsns_get_distinct_adapters() -> None:
    factory = RecordingFactory()
    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    first = await broker.resolve("postgresql", "postgres://u:p@h/one")
    second = await broker.resolve("postgresql", "postgres://u:p@h/two")
    assert first is not second
    assert broker.stats() == {"adapters": 2, "by_dialect": {"postgresql": 2}, "retired": 0}


@pytest.mark.asyncio
async def test_concurrent_misses_construct_once() -> None:
    built: list[FakeAdapter] = []

    class SlowHealthAdapter(FakeAdapter):
        async def health_check(self) -> None:
            await asyncio.sleep(0.05)
            await super().health_check()

    def factory(dialect: Dialect, dsn: str, limits: PoolLimits) -> FakeAdapter:
        adapter = SlowHealthAdapter(dialect)
        built.append(adapter)
        return adapter

    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    adapters = await asyncio.gather(*(broker.resolve("sqlite", "shared.db") for _ in range(10)))
    assert len(built) == 1
    assert all(adapter is adapters[0] for adapter in adapters)


@pytest.mark.asyncio
async def test_failed_health_check_is_not_cached() -> None:
    factory = RecordingFactory(fail_health=True)
    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    with pytest.raises(BackendUnavailableError):
        await broker.resolve("postgresql", "postgres://u:p@down/db")
    assert factory.built[0][2].closed is True
    assert broker.stats()["adapters"] == 0


@pytest.mark.asyncio
async def test_factory_failure_maps_to_backend_unavailable() -> None:
    def factory(dialect: Dialect, dsn: str, limits: PoolLimits) -> FakeAdapter:
        raise OSError("driver missing")

    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    with pytest.raises(BackendUnavailableError):
        await broker.resolve("sqlite", "x.db")


@pytest.mark.asyncio
async def test_invalid_dialect_is_rejected_before_construction() -> None:
    factory = RecordingFactory()
    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    with pytest.raises(InvalidDialectError):
        await broker.resolve("oracle", "whatever")
    assert factory.built == []


@pytest.mark.asyncio
async def test_evict_closes_and_forgets_adapter() -> None:
    factory = RecordingFactory()
    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    adapter = await broker.resolve("sqlite", "a.db")
    assert await broker.evict("sqlite", "a.db") is True
    assert adapter.closed is True
    assert await broker.evict("sqlite", "a.db") is False
    assert await broker.resolve("sqlite", "a.db") is not adapter


@pytest.mark.asyncio
async def test_close_all_attempts_every_adapter_and_reraises_first_error() -> None:
    adapters = [
        FakeAdapter(Dialect.SQLITE, close_error=RuntimeError("first")),
        FakeAdapter(Dialect.SQLITE, close_error=RuntimeError("second")),
        FakeAdapter(Dialect.SQLITE),
    ]
    pending = iter(adapters)

    broker = ConnectionBroker(limits=_LIMITS, factory=lambda dialect, dsn, limits: next(pending))
    for index in range(3):
        await broker.resolve("sqlite", f"db-{index}.db")
    with pytest.raises(RuntimeError, match="first"):
        await broker.close_all()
    assert all(adapter.closed for adapter in adapters)
    assert broker.stats()["adapters"] == 0


@pytest.mark.asyncio
async def test_failed_construction_releases_init_lock() -> None:
    broker = ConnectionBroker(limits=_LIMITS, factory=RecordingFactory(fail_health=True))
    for index in range(3):
        with pytest.raises(BackendUnavailableError):
            await broker.resolve("postgresql", f"postgres://u:p@down/db{index}")
    assert broker._init_locks == {}


@pytest.mark.asyncio
async def test_successful_construction_releases_init_lock() -> None:
    broker = ConnectionBroker(limits=_LIMITS, factory=RecordingFactory())
    await broker.resolve("sqlite", "a.db")
    assert broker._init_locks == {}


@pytest.mark.asyncio
async def test_evict_waits_for_leases_before_closing() -> None:
    factory = RecordingFactory()
    broker = ConnectionBroker(limits=_LIMITS, factory=factory)
    async with broker.lease("duckdb", "shared.duckdb") as adapter:
        async with broker.lease("duckdb", "shared.duckdb") as again:
            assert again is adapter
            assert await broker.evict("duckdb", "shared.duckdb") is True
            assert adapter.closed is False
            assert broker.stats()["retired"] == 1
        assert adapter.closed is False
        # A fresh resolve after eviction builds a new adapter.
        assert await broker.resolve("duckdb", "shared.duckdb") is not adapter
    assert adapter.closed is True
    assert broker.stats()["retired"] == 0
    assert len(factory.built) == 2


@pytest.mark.asyncio
async def test_evict_without_leases_closes_immediately() -> None:
    broker = ConnectionBroker(limits=_LIMITS, factory=RecordingFactory())
    async with broker.lease("sqlite", "a.db") as adapter:
        pass
    assert await broker.evict("sqlite", "a.db") is True
    assert adapter.closed is True


@pytest.mark.asyncio
async def test_close_all_closes_leased_and_retired_adapters() -> None:
    broker = ConnectionBroker(limits=_LIMITS, factory=RecordingFactory())
    async with broker.lease("sqlite", "a.db") as adapter:
        await broker.evict("sqlite", "a.db")
        await broker.close_all()
        assert adapter.closed is True
