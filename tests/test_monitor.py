from __future__ import annotations

import asyncio

import pytest

from ingestion.rpc.errors import ErrorKind
from ingestion.rpc.monitor import PoolHealthMonitor

A, B = "https://a.example", "https://b.example"


@pytest.mark.asyncio
async def test_check_once_readmits_recovered_endpoint(network, ledger, make_pool):
    network.add(A, error_kind=ErrorKind.TIMEOUT)
    network.add(B)
    pool = make_pool()
    await pool.build_pool([A, B], ledger.chain_id)
    monitor = PoolHealthMonitor(pool, interval_sec=60)

    assert await monitor.check_once() == 0
    network.nodes[A].error_kind = None
    assert await monitor.check_once() == 1

    metrics = monitor.get_metrics()
    assert metrics["checks"] == 2
    assert metrics["readmitted"] == 1
    assert metrics["last_check"].endswith("+00:00")
    assert [ep.url for ep in pool.admitted] == [A, B]


@pytest.mark.asyncio
async def test_background_loop_starts_and_stops(network, ledger, make_pool):
    network.add(A)
    pool = make_pool()
    await pool.build_pool([A], ledger.chain_id)
    monitor = PoolHealthMonitor(pool, interval_sec=0.01)

    monitor.start()
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert not monitor.running
    assert monitor.get_metrics()["checks"] >= 1
    assert monitor.get_metrics()["errors"] == 0
