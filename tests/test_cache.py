from __future__ import annotations

import asyncio

import pytest

from ingestion.rpc.cache import RpcCache, make_key


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_make_key_is_stable_and_param_sensitive():
    assert make_key("eth_call", [{"to": "0x1", "data": "0x"}, "latest"]) == make_key(
        "eth_call", [{"data": "0x", "to": "0x1"}, "latest"]
    )
    assert make_key("eth_call", [1]) != make_key("eth_call", [2])
    assert make_key("eth_call", [1], "137") != make_key("eth_call", [1], "80002")


def test_ttl_expiry():
    clock = Clock()
    cache = RpcCache(default_ttl_ms=1000, clock=clock)
    cache.set("k", "v")

    assert cache.get("k") == "v"
    clock.now = 1.5
    assert cache.get("k") is None
    assert cache.get_metrics()["evictions"] == 1


def test_bounded_size_evicts_oldest():
    cache = RpcCache(max_entries=3)
    for i in range(5):
        cache.set(f"k{i}", i)

    assert len(cache) == 3
    assert "k0" not in cache
    assert "k4" in cache


def test_method_ttl_policy():
    cache = RpcCache(method_ttls_ms={"eth_call": 500})

    assert cache.ttl_for("eth_chainId") == 24 * 60 * 60 * 1000
    assert cache.ttl_for("eth_call") == 500
    assert cache.ttl_for("eth_getTransactionReceipt") is None


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch():
    cache = RpcCache()
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "0x10"

    results = await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(5)))

    assert results == ["0x10"] * 5
    assert len(calls) == 1
    assert cache.get_metrics()["deduped"] == 4
    assert await cache.get_or_fetch("k", fetch) == "0x10"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached():
    cache = RpcCache()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return 7

    with pytest.raises(RuntimeError):
        await cache.get_or_fetch("k", flaky)
    assert await cache.get_or_fetch("k", flaky) == 7
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_uncacheable_method_always_fetches():
    cache = RpcCache()
    calls = []

    async def fetch():
        calls.append(1)
        return {"status": "0x1"}

    await cache.get_or_fetch_method("eth_getTransactionReceipt", ["0xabc"], fetch)
    await cache.get_or_fetch_method("eth_getTransactionReceipt", ["0xabc"], fetch)

    assert len(calls) == 2
    assert len(cache) == 0
