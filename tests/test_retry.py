from __future__ import annotations

import pytest

from ingestion.rpc.errors import DomainError, EndpointsExhausted, ErrorKind, NetworkError
from ingestion.rpc.retry import RetryExecutor

A, B, C = "https://a.example", "https://b.example", "https://c.example"


async def _pool(network, ledger, make_pool, urls=(A, B, C), **kwargs):
    for url in urls:
        if url not in network.nodes:
            network.add(url)
    pool = make_pool(**kwargs)
    await pool.build_pool(list(urls), ledger.chain_id)
    return pool


@pytest.mark.asyncio
async def test_read_succeeds_when_one_endpoint_is_healthy(network, ledger, make_pool, recording_sleep):
    network.add(A, error_kind=ErrorKind.RATE_LIMITED, fail_methods={"eth_getBalance"})
    network.add(B, error_kind=ErrorKind.TIMEOUT, fail_methods={"eth_getBalance"})
    pool = await _pool(network, ledger, make_pool)
    retry = RetryExecutor(pool, max_attempts=3, base_delay_ms=100, sleep=recording_sleep)
    ledger.balances[A.lower()] = 5

    result = await retry.execute_with_retry(lambda ep: ep.transport.request("eth_getBalance", [A, "latest"]))

    assert result == hex(5)
    assert pool.current_endpoint().url == C
    assert recording_sleep.delays == [0.1, 0.2]


@pytest.mark.asyncio
async def test_each_retry_uses_a_different_endpoint(network, ledger, make_pool, recording_sleep):
    pool = await _pool(network, ledger, make_pool)
    retry = RetryExecutor(pool, max_attempts=3, base_delay_ms=1, sleep=recording_sleep)
    seen = []

    async def op(ep):
        seen.append(ep.url)
        raise NetworkError("down", kind=ErrorKind.TRANSPORT, endpoint=ep.url)

    with pytest.raises(EndpointsExhausted) as exc:
        await retry.execute_with_retry(op)

    assert seen == [A, B, C]
    assert exc.value.endpoints_tried == [A, B, C]
    assert [a.kind for a in exc.value.attempts] == [ErrorKind.TRANSPORT] * 3


@pytest.mark.asyncio
async def test_single_endpoint_is_reselected(network, ledger, make_pool, recording_sleep):
    pool = await _pool(network, ledger, make_pool, urls=(A,))
    retry = RetryExecutor(pool, max_attempts=2, base_delay_ms=1, sleep=recording_sleep)
    seen = []

    async def op(ep):
        seen.append(ep.url)
        if len(seen) == 1:
            raise NetworkError("blip", kind=ErrorKind.TIMEOUT)
        return "ok"

    assert await retry.execute_with_retry(op) == "ok"
    assert seen == [A, A]


@pytest.mark.asyncio
async def test_domain_error_is_not_retried(network, ledger, make_pool, recording_sleep):
    pool = await _pool(network, ledger, make_pool)
    retry = RetryExecutor(pool, sleep=recording_sleep)
    calls = []

    async def op(ep):
        calls.append(ep.url)
        raise DomainError("no such thing", kind=ErrorKind.NOT_FOUND)

    with pytest.raises(DomainError):
        await retry.execute_with_retry(op)

    assert calls == [A]
    assert pool.current_endpoint().url == A
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_programming_errors_propagate_untouched(network, ledger, make_pool, recording_sleep):
    pool = await _pool(network, ledger, make_pool)
    retry = RetryExecutor(pool, sleep=recording_sleep)

    async def op(ep):
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await retry.execute_with_retry(op)
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_exhausted_carries_last_kind(network, ledger, make_pool, recording_sleep):
    network.add(A, error_kind=ErrorKind.RATE_LIMITED)
    network.add(B, error_kind=ErrorKind.UNAUTHORIZED, fail_methods={"eth_getBalance"})
    pool = make_pool()
    await pool.build_pool([A, B], ledger.chain_id)
    assert [ep.url for ep in pool.admitted] == [B]
    retry = RetryExecutor(pool, max_attempts=2, base_delay_ms=50, sleep=recording_sleep)

    with pytest.raises(EndpointsExhausted) as exc:
        await retry.execute_with_retry(lambda ep: ep.transport.request("eth_getBalance", [A, "latest"]))

    assert exc.value.kind is ErrorKind.UNAUTHORIZED
    assert recording_sleep.delays == [0.05]


@pytest.mark.asyncio
async def test_backoff_doubles_per_attempt(network, ledger, make_pool, recording_sleep):
    pool = await _pool(network, ledger, make_pool)
    retry = RetryExecutor(pool, max_attempts=4, base_delay_ms=400, sleep=recording_sleep)

    async def op(ep):
        raise NetworkError("x")

    with pytest.raises(EndpointsExhausted):
        await retry.execute_with_retry(op)

    assert recording_sleep.delays == [0.4, 0.8, 1.6]
    assert RetryExecutor.backoff_ms(400, 1) == 400


@pytest.mark.asyncio
async def test_wrap_applies_the_same_policy(network, ledger, make_pool, recording_sleep):
    network.add(A, error_kind=ErrorKind.TIMEOUT, fail_methods={"eth_getBalance"})
    pool = await _pool(network, ledger, make_pool)
    retry = RetryExecutor(pool, sleep=recording_sleep)
    ledger.balances[C.lower()] = 9

    async def balance(ep):
        return await ep.transport.request("eth_getBalance", [C, "latest"])

    wrapped = retry.wrap(balance)

    assert await wrapped() == hex(9)
    assert retry.get_metrics()["retries"] == 1
