"""
ingestion/rpc/client.py

LedgerClient — unified facade for ledger reads with failover, caching and batching.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .abi import MethodDescriptor, to_bytes
from .batcher import BatchCall, BatchReader
from .cache import RpcCache, make_key
from .errors import ClassifiedError
from .monitor import PoolHealthMonitor
from .pool import EndpointPool, parse_quantity
from .retry import RetryExecutor
from .transport import TransportFactory, default_transport_factory

logger = logging.getLogger(__name__)


class LedgerClient:
    """
    Unified read client: EndpointPool + RetryExecutor + RpcCache + BatchReader.

    Supports:
    - Retry with failover for every read (network errors rotate, domain errors raise)
    - Per-method TTL cache with in-flight de-duplication
    - Multicall2 batching with transparent per-call fallback
    - Network switch (pool rebuilt, caches and batch availability reset)

    Receipts are never cached: they are polled by the orchestrator.
    """

    DEFAULT_FALLBACK_CONCURRENCY = 5

    def __init__(
        self,
        pool: EndpointPool,
        retry: Optional[RetryExecutor] = None,
        cache: Optional[RpcCache] = None,
        batch_reader: Optional[BatchReader] = None,
        *,
        networks: Optional[Dict[str, Any]] = None,
        network: Optional[str] = None,
        batch_enabled: bool = True,
        fallback_concurrency: int = DEFAULT_FALLBACK_CONCURRENCY,
        readmit_interval_sec: Optional[float] = None,
        batch_timeout_ms: int = BatchReader.DEFAULT_BATCH_TIMEOUT_MS,
    ):
        """
        Initialize LedgerClient.

        Args:
            pool: EndpointPool (built by start() or by the caller)
            retry: RetryExecutor over pool (created if not provided)
            cache: RpcCache (created if not provided)
            batch_reader: BatchReader (created on start() if not provided)
            networks: name -> NetworkConfig, needed by start()/switch_network()
            network: Name of the active network
            batch_enabled: Use Multicall2 in call_many()
            fallback_concurrency: Max outstanding single calls when batching is unavailable
            readmit_interval_sec: Run a PoolHealthMonitor at this interval (None = off)
            batch_timeout_ms: Budget for one aggregate call
        """
        self._pool = pool
        self._retry = retry or RetryExecutor(pool)
        self._cache = cache or RpcCache()
        self._batch_reader = batch_reader
        self._networks = dict(networks or {})
        self._network = network
        self._batch_enabled = batch_enabled
        self._fallback_concurrency = max(1, fallback_concurrency)
        self._batch_timeout_ms = batch_timeout_ms
        self._monitor = (
            PoolHealthMonitor(pool, interval_sec=readmit_interval_sec)
            if readmit_interval_sec
            else None
        )

        # Metrics
        self._requests = 0
        self._batched_calls = 0
        self._fallback_calls = 0
        self._network_switches = 0

    # ------------------------------------------------------------- factories

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        transport_factory: TransportFactory = default_transport_factory,
    ) -> "LedgerClient":
        """Build an unstarted client from config.runtime_schema.Settings."""
        cfg = settings.client
        pool = EndpointPool(
            transport_factory=transport_factory,
            local_timeout_ms=cfg.local_admission_timeout_ms,
            remote_timeout_ms=cfg.remote_admission_timeout_ms,
            failure_threshold=cfg.failure_threshold,
            max_admitted=cfg.max_admitted,
            request_timeout_ms=cfg.request_timeout_ms,
        )
        retry = RetryExecutor(pool, max_attempts=cfg.max_attempts, base_delay_ms=cfg.retry_base_delay_ms)
        cache = RpcCache(max_entries=cfg.cache_max_entries, method_ttls_ms=dict(cfg.cache_ttls_ms))
        return cls(
            pool,
            retry,
            cache,
            networks=settings.networks,
            network=settings.default_network,
            batch_enabled=cfg.batch_enabled,
            fallback_concurrency=cfg.fallback_concurrency,
            readmit_interval_sec=cfg.readmit_interval_sec,
            batch_timeout_ms=cfg.batch_timeout_ms,
        )

    # -------------------------------------------------------------- lifecycle

    async def start(self, network: Optional[str] = None) -> None:
        """Build the pool for a configured network and start readmission."""
        name = network or self._network
        net = self._network_config(name)
        await self._pool.build_pool(net.rpc_urls, net.chain_id)
        self._network = name
        self._bind_batch_reader(net)
        if self._monitor is not None:
            self._monitor.start()

    async def switch_network(self, network: str) -> None:
        """
        Network-context switch: rebuild the pool, drop cached reads, forget
        batch availability.
        """
        net = self._network_config(network)
        old = self._network
        logger.info(f"[rpc] Switching network {old} -> {network} (chain {net.chain_id})")
        await self._pool.rebuild(net.rpc_urls, net.chain_id)
        self._cache.clear()
        self._network = network
        self._bind_batch_reader(net)
        self._network_switches += 1

    async def close(self) -> None:
        if self._monitor is not None:
            await self._monitor.stop()
        await self._pool.close()

    async def __aenter__(self) -> "LedgerClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def update_networks(self, networks: Dict[str, Any]) -> None:
        """Replace known network definitions (takes effect on the next switch)."""
        self._networks = dict(networks)

    def _network_config(self, name: Optional[str]) -> Any:
        if name is None or name not in self._networks:
            raise KeyError(f"unknown network: {name!r}")
        return self._networks[name]

    def _bind_batch_reader(self, net: Any) -> None:
        if self._batch_reader is None:
            self._batch_reader = BatchReader(
                self._retry,
                net.chain_id,
                multicall_address=net.multicall_address,
                batch_timeout_ms=self._batch_timeout_ms,
            )
        else:
            self._batch_reader.reset(chain_id=net.chain_id, multicall_address=net.multicall_address)

    # ------------------------------------------------------------- accessors

    @property
    def pool(self) -> EndpointPool:
        return self._pool

    @property
    def retry(self) -> RetryExecutor:
        return self._retry

    @property
    def cache(self) -> RpcCache:
        return self._cache

    @property
    def batch_reader(self) -> Optional[BatchReader]:
        """Active BatchReader, or None when batching is disabled or not bound yet."""
        return self._batch_reader if self._batch_enabled else None

    @property
    def network(self) -> Optional[str]:
        return self._network

    @property
    def network_config(self) -> Any:
        return self._networks.get(self._network) if self._network else None

    def explorer_tx_url(self, handle_id: str) -> Optional[str]:
        """Block explorer link for a transaction hash on the active network."""
        net = self.network_config
        explorer = getattr(net, "block_explorer", None) if net is not None else None
        if not explorer:
            return None
        return f"{explorer.rstrip('/')}/tx/{handle_id}"

    # ------------------------------------------------------------------ reads

    async def request(self, method: str, params: Optional[List[Any]] = None, *, use_cache: bool = True) -> Any:
        """
        Raw JSON-RPC read with retry/failover and per-method caching.

        Args:
            method: RPC method name (e.g., "eth_blockNumber")
            params: RPC parameters
            use_cache: Consult/populate the cache for cacheable methods

        Returns:
            RPC result
        """
        params = list(params or [])
        self._requests += 1

        async def fetch() -> Any:
            return await self._retry.execute_with_retry(
                lambda ep: ep.transport.request(method, params),
                operation_name=method,
            )

        if not use_cache:
            return await fetch()
        return await self._cache.get_or_fetch_method(method, params, fetch, namespace=str(self._pool.expected_chain_id))

    async def chain_id(self) -> int:
        return parse_quantity(await self.request("eth_chainId"))

    async def block_number(self) -> int:
        """Current head height. Served from the short-TTL cache."""
        return parse_quantity(await self.request("eth_blockNumber"))

    async def get_code(self, address: str, block: str = "latest") -> str:
        return await self.request("eth_getCode", [address, block])

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return parse_quantity(await self.request("eth_getBalance", [address, block]))

    async def get_transaction_receipt(self, handle_id: str) -> Optional[Dict[str, Any]]:
        """Receipt or None while the transaction is not yet included. Never cached."""
        return await self.request("eth_getTransactionReceipt", [handle_id], use_cache=False)

    async def get_transaction(self, handle_id: str) -> Optional[Dict[str, Any]]:
        return await self.request("eth_getTransactionByHash", [handle_id], use_cache=False)

    async def call_raw(self, tx: Dict[str, Any], block: Any = "latest", *, use_cache: bool = True) -> bytes:
        """eth_call with a prepared call object; returns raw return data."""
        return to_bytes(await self.request("eth_call", [tx, block], use_cache=use_cache))

    async def call(
        self,
        target: str,
        method: MethodDescriptor,
        args: Sequence[Any] = (),
        block: Any = "latest",
        *,
        use_cache: bool = True,
    ) -> Any:
        """
        Single contract read, decoded by the method descriptor.

        Raises:
            DomainError: reverted call, bad args, or undecodable data
            EndpointsExhausted: every attempt failed at the network level
        """
        data = method.encode_call_hex(args)
        raw = await self.call_raw({"to": target, "data": data}, block, use_cache=use_cache)
        return method.decode_result(raw)

    async def call_many(
        self,
        calls: Sequence[BatchCall],
        concurrency_limit: Optional[int] = None,
    ) -> List[Any]:
        """
        Many contract reads; one value per call in input order.

        Uses one Multicall2 round trip when available; otherwise issues the
        calls individually with bounded concurrency. A failed call yields None
        in its slot and never fails its neighbours.
        """
        if not calls:
            return []

        if self._batch_enabled and self._batch_reader is not None:
            results = await self._batch_reader.batch(calls)
            if results is not None:
                self._batched_calls += len(calls)
                return BatchReader.decode_all(calls, results)
            logger.info(f"[rpc] Batching unavailable, falling back to {len(calls)} individual calls")

        self._fallback_calls += len(calls)
        semaphore = asyncio.Semaphore(concurrency_limit or self._fallback_concurrency)

        async def one(call: BatchCall) -> Any:
            async with semaphore:
                try:
                    return await self.call(call.target, call.method, call.args)
                except ClassifiedError as e:
                    logger.warning(f"[rpc] {call.method.signature} on {call.target} failed: {e}")
                    return None

        return list(await asyncio.gather(*(one(c) for c in calls)))

    def invalidate(self, method: str, params: Optional[List[Any]] = None) -> bool:
        """Drop one cached read."""
        return self._cache.delete(make_key(method, list(params or []), str(self._pool.expected_chain_id)))

    # ---------------------------------------------------------------- metrics

    def get_metrics(self) -> Dict[str, Any]:
        """Get client metrics."""
        metrics: Dict[str, Any] = {
            "network": self._network,
            "requests": self._requests,
            "batched_calls": self._batched_calls,
            "fallback_calls": self._fallback_calls,
            "network_switches": self._network_switches,
            "pool": self._pool.get_metrics(),
            "retry": self._retry.get_metrics(),
            "cache": self._cache.get_metrics(),
        }
        if self._batch_reader is not None:
            metrics["batch"] = self._batch_reader.get_metrics()
        if self._monitor is not None:
            metrics["health_monitor"] = self._monitor.get_metrics()
        return metrics
