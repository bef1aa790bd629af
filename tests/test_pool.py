from __future__ import annotations

import asyncio
import logging

import pytest

from ingestion.rpc.errors import EndpointsExhausted, ErrorKind, NetworkError, PoolEmptyError
from ingestion.rpc.pool import dedupe_urls, is_local_url, parse_quantity
from ingestion.rpc.retry import RetryExecutor

A, B, C = "https://a.example", "https://b.example", "https://c.example"


def test_helpers():
    assert dedupe_urls([A, "", B, A, " ", C, B]) == [A, B, C]
    assert is_local_url("http://127.0.0.1:8545")
    assert is_local_url("http://localhost:8545/rpc")
    assert not is_local_url(A)
    assert parse_quantity("0x13882") == 80002
    assert parse_quantity(7) == 7
    with pytest.raises(ValueError):
        parse_quantity(None)


@pytest.mark.asyncio
async def test_admits_only_healthy_endpoint_with_matching_identity(network, ledger, make_pool):
    network.add(A, hang=True)
    network.add(B, chain_id=137)
    network.add(C)
    pool = make_pool(remote_timeout_ms=100)

    admitted = await pool.build_pool([A, B, C], ledger.chain_id)

    assert [ep.url for ep in admitted] == [C]
    assert pool.current_endpoint().url == C
    rejected = {ep.url: ep.last_error for ep in pool.candidates if not ep.admitted}
    assert rejected == {A: ErrorKind.TIMEOUT, B: ErrorKind.WRONG_IDENTITY}
    assert all(ep.last_checked.tzinfo is not None for ep in pool.candidates)
    assert pool.get_metrics()["rotations"] == 0


@pytest.mark.asyncio
async def test_rejections_are_logged_with_reason(network, ledger, make_pool, caplog):
    network.add(A, error_kind=ErrorKind.UNAUTHORIZED)
    network.add(B, error_kind=ErrorKind.RATE_LIMITED)
    network.add(C)
    pool = make_pool()

    with caplog.at_level(logging.WARNING, logger="ingestion.rpc.pool"):
        await pool.build_pool([A, B, C], ledger.chain_id)

    assert "unauthorized" in caplog.text
    assert "rate_limited" in caplog.text
    assert len(pool) == 1


@pytest.mark.asyncio
async def test_empty_pool_is_logged_and_raises_on_use(network, ledger, make_pool, caplog):
    network.add(A, error_kind=ErrorKind.FORBIDDEN)

    with caplog.at_level(logging.ERROR, logger="ingestion.rpc.pool"):
        admitted = await make_pool().build_pool([A], ledger.chain_id)

    assert admitted == []
    assert "No endpoint admitted" in caplog.text


@pytest.mark.asyncio
async def test_current_endpoint_on_empty_pool_raises(make_pool):
    pool = make_pool()

    with pytest.raises(PoolEmptyError):
        pool.current_endpoint()
    with pytest.raises(PoolEmptyError):
        await pool.rotate()


@pytest.mark.asyncio
async def test_admitted_order_follows_configuration_not_completion(network, ledger, make_pool):
    network.add(A, delay=0.05)
    network.add(B, delay=0.02)
    network.add(C)
    pool = make_pool()

    admitted = await pool.build_pool([A, B, C, A], ledger.chain_id)

    assert [ep.url for ep in admitted] == [A, B, C]
    assert len(pool.candidates) == 3


@pytest.mark.asyncio
async def test_max_admitted_keeps_first_successes(network, ledger, make_pool):
    network.add(A, delay=0.2)
    network.add(B)
    network.add(C)
    pool = make_pool(max_admitted=2)

    admitted = await pool.build_pool([A, B, C], ledger.chain_id)

    assert [ep.url for ep in admitted] == [B, C]


@pytest.mark.asyncio
async def test_local_endpoints_get_shorter_admission_budget(network, ledger, make_pool):
    local = "http://127.0.0.1:8545"
    network.add(local, delay=0.15)
    network.add(A, delay=0.15)
    pool = make_pool(local_timeout_ms=100, remote_timeout_ms=1000)

    admitted = await pool.build_pool([local, A], ledger.chain_id)

    assert [ep.url for ep in admitted] == [A]


@pytest.mark.asyncio
async def test_rotate_cycles_and_reports_exhaustion(network, ledger, make_pool):
    pool = make_pool()
    for url in (A, B, C):
        network.add(url)
    await pool.build_pool([A, B, C], ledger.chain_id)

    assert await pool.rotate() is False
    assert pool.current_endpoint().url == B
    assert await pool.rotate() is False
    assert await pool.rotate() is True
    assert pool.current_endpoint().url == A

    await pool.report_success(pool.current_endpoint(), 12.0)
    assert await pool.rotate() is False


@pytest.mark.asyncio
async def test_concurrent_rotations_for_same_failure_advance_once(network, ledger, make_pool):
    pool = make_pool()
    for url in (A, B, C):
        network.add(url)
    await pool.build_pool([A, B, C], ledger.chain_id)
    failed = pool.current_endpoint()

    await asyncio.gather(*(pool.rotate(failed) for _ in range(5)))

    assert pool.current_endpoint().url == B
    assert pool.get_metrics()["rotations"] == 1


@pytest.mark.asyncio
async def test_demotion_at_threshold_but_never_the_last(network, ledger, make_pool):
    pool = make_pool(failure_threshold=2)
    network.add(A)
    network.add(B)
    await pool.build_pool([A, B], ledger.chain_id)
    a, b = pool.admitted
    err = NetworkError("down", kind=ErrorKind.TRANSPORT)

    await pool.report_failure(a, err)
    assert len(pool) == 2
    await pool.report_failure(a, err)
    assert [ep.url for ep in pool.admitted] == [B]
    assert pool.current_endpoint() is b

    for _ in range(5):
        await pool.report_failure(b, err)
    assert [ep.url for ep in pool.admitted] == [B]


@pytest.mark.asyncio
async def test_readmit_demoted_restores_order_and_cursor(network, ledger, make_pool):
    pool = make_pool(failure_threshold=1)
    for url in (A, B, C):
        network.add(url)
    await pool.build_pool([A, B, C], ledger.chain_id)
    a = pool.admitted[0]
    await pool.report_failure(a, NetworkError("down"))
    assert pool.current_endpoint().url == B
    await pool.rotate()
    assert pool.current_endpoint().url == C

    readmitted = await pool.readmit_demoted()

    assert [ep.url for ep in readmitted] == [A]
    assert [ep.url for ep in pool.admitted] == [A, B, C]
    assert pool.current_endpoint().url == C


@pytest.mark.asyncio
async def test_readmit_skips_still_failing_endpoints(network, ledger, make_pool):
    network.add(A, error_kind=ErrorKind.TIMEOUT)
    network.add(B)
    pool = make_pool()
    await pool.build_pool([A, B], ledger.chain_id)

    assert await pool.readmit_demoted() == []

    network.nodes[A].error_kind = None
    assert [ep.url for ep in await pool.readmit_demoted()] == [A]


@pytest.mark.asyncio
async def test_rebuild_closes_old_transports(network, ledger, make_pool):
    for url in (A, B):
        network.add(url)
    pool = make_pool()
    await pool.build_pool([A], ledger.chain_id)
    old = list(network.transports)

    await pool.rebuild([B], ledger.chain_id)

    assert all(t.closed for t in old)
    assert [ep.url for ep in pool.admitted] == [B]
    status = pool.status()
    assert status["current"] == B
    assert status["expected_chain_id"] == ledger.chain_id


@pytest.mark.asyncio
async def test_readmission_overlapping_rebuild_keeps_new_pool(network, ledger, make_pool, recording_sleep):
    pool = make_pool(failure_threshold=1)
    for url in (A, B, C):
        network.add(url)
    await pool.build_pool([A, B], ledger.chain_id)
    await pool.report_failure(pool.admitted[0], NetworkError("down"))
    assert [ep.url for ep in pool.admitted] == [B]
    network.nodes[A].delay = 0.05

    readmission = asyncio.ensure_future(pool.readmit_demoted())
    await asyncio.sleep(0.01)
    await pool.rebuild([C], ledger.chain_id)

    assert await readmission == []
    assert [ep.url for ep in pool.admitted] == [C]
    assert all(ep.transport is not None for ep in pool.admitted)
    assert all(t.closed for t in network.transports if t.url == A)

    network.nodes[C].error_kind = ErrorKind.TIMEOUT
    retry = RetryExecutor(pool, max_attempts=3, base_delay_ms=1, sleep=recording_sleep)
    with pytest.raises(EndpointsExhausted):
        await retry.execute_with_retry(lambda ep: ep.transport.request("eth_blockNumber", []))


@pytest.mark.asyncio
async def test_readmission_ignores_endpoints_of_a_replaced_build_with_same_urls(network, ledger, make_pool):
    pool = make_pool(failure_threshold=1)
    for url in (A, B):
        network.add(url)
    await pool.build_pool([A, B], ledger.chain_id)
    await pool.report_failure(pool.admitted[0], NetworkError("down"))
    network.nodes[A].delay = 0.05

    readmission = asyncio.ensure_future(pool.readmit_demoted())
    await asyncio.sleep(0.01)
    await pool.rebuild([A, B], ledger.chain_id)

    assert await readmission == []
    assert [ep.url for ep in pool.admitted] == [A, B]
    assert all(any(ep is c for c in pool.candidates) for ep in pool.admitted)
