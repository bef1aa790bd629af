from __future__ import annotations

import pytest

from config.runtime_schema import NetworkConfig
from ingestion.rpc.client import LedgerClient
from ingestion.rpc.pool import EndpointPool
from ingestion.rpc.retry import RetryExecutor
from tests.fakes import FakeLedger, FakeNetwork, RecordingSleep

EXPLORER = "https://amoy.polygonscan.com"


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def network(ledger: FakeLedger) -> FakeNetwork:
    return FakeNetwork(ledger)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_pool(network: FakeNetwork):
    """Unbuilt EndpointPool wired to the fake network."""

    def _make(**kwargs) -> EndpointPool:
        kwargs.setdefault("local_timeout_ms", 200)
        kwargs.setdefault("remote_timeout_ms", 400)
        return EndpointPool(transport_factory=network.factory, **kwargs)

    return _make


@pytest.fixture
def make_client(network: FakeNetwork, ledger: FakeLedger, make_pool, recording_sleep: RecordingSleep):
    """Coroutine factory: a started LedgerClient over the given URLs (unknown URLs are added healthy)."""

    async def _make(urls, *, max_attempts: int = 3, **client_kwargs) -> LedgerClient:
        for url in urls:
            if url not in network.nodes:
                network.add(url)
        net = NetworkConfig(
            name="test",
            chain_id=ledger.chain_id,
            rpc_urls=tuple(urls),
            multicall_address=ledger.multicall_address,
            block_explorer=EXPLORER,
        )
        pool = make_pool()
        retry = RetryExecutor(pool, max_attempts=max_attempts, base_delay_ms=10, sleep=recording_sleep)
        client = LedgerClient(pool, retry, networks={"test": net}, network="test", **client_kwargs)
        await client.start()
        return client

    return _make
