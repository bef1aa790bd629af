"""
ingestion/rpc/batcher.py

BatchReader — folds many contract reads into one Multicall2 round trip.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import encode_hex, to_checksum_address

from .abi import MethodDescriptor, decode_revert_reason, selector_for, to_bytes
from .errors import ClassifiedError, DomainError, ErrorKind
from .retry import RetryExecutor

logger = logging.getLogger(__name__)


# Multicall2 deployments per chain id
MULTICALL2_ADDRESSES: Dict[int, str] = {
    1: "0x5BA1e12693Dc8F9c48aAD8770482f4739bEeD696",
    137: "0x275617327c958bD06b5D6b871E7f491D76113dd8",
    80002: "0xcA11bde05977b3631167028862bE2a173976CA11",
    31337: "0xcA11bde05977b3631167028862bE2a173976CA11",
}

TRY_AGGREGATE_SIGNATURE = "tryAggregate(bool,(address,bytes)[])"
TRY_AGGREGATE_ARGS = ["bool", "(address,bytes)[]"]
TRY_AGGREGATE_RETURNS = ["(bool,bytes)[]"]


@dataclass(frozen=True)
class BatchCall:
    """One contract read inside a batch."""
    target: str
    method: MethodDescriptor
    args: Tuple[Any, ...] = field(default_factory=tuple)

    def call_data(self) -> bytes:
        return self.method.encode_call(self.args)


@dataclass(frozen=True)
class BatchResult:
    """Raw outcome of one call: success flag + return data."""
    success: bool
    return_data: bytes = b""


def encode_try_aggregate(pairs: Sequence[Tuple[str, bytes]]) -> bytes:
    return selector_for(TRY_AGGREGATE_SIGNATURE) + encode(TRY_AGGREGATE_ARGS, [False, list(pairs)])


def decode_try_aggregate(data: Any) -> List[BatchResult]:
    """Decode (bool,bytes)[]; raises DomainError on any malformed payload."""
    try:
        (rows,) = decode(TRY_AGGREGATE_RETURNS, to_bytes(data))
    except (DecodingError, ValueError, TypeError) as e:
        raise DomainError(f"malformed tryAggregate response: {e}", kind=ErrorKind.MALFORMED_RESPONSE) from e
    return [BatchResult(success=bool(ok), return_data=bytes(ret)) for ok, ret in rows]


class BatchReader:
    """
    Batched multi-call read optimizer.

    batch() returns None, never raises, whenever the batching facility cannot
    be used; callers then fall back to individual reads. Facility availability
    is probed once per network (eth_getCode at the Multicall2 address).

    Features:
    - Order preserving: results[i] belongs to calls[i]
    - Per-call independence: one failing call never fails its neighbours
    - Pure decode: decode() does no I/O
    """

    DEFAULT_BATCH_TIMEOUT_MS = 10_000

    def __init__(
        self,
        retry: RetryExecutor,
        chain_id: int,
        multicall_address: Optional[str] = None,
        batch_timeout_ms: int = DEFAULT_BATCH_TIMEOUT_MS,
    ):
        """
        Initialize BatchReader.

        Args:
            retry: RetryExecutor used for the aggregate eth_call
            chain_id: Chain the pool is bound to
            multicall_address: Override the known deployment for chain_id
            batch_timeout_ms: Budget for one aggregate call
        """
        self._retry = retry
        self._batch_timeout_ms = batch_timeout_ms
        self._chain_id = chain_id
        self._address = multicall_address or MULTICALL2_ADDRESSES.get(chain_id)
        self._available: Optional[bool] = None

        # Metrics
        self._batches = 0
        self._calls = 0
        self._failures = 0
        self._fallbacks = 0

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def reset(self, chain_id: Optional[int] = None, multicall_address: Optional[str] = None) -> None:
        """Forget availability; rebind to another network if given."""
        if chain_id is not None:
            self._chain_id = chain_id
            self._address = multicall_address or MULTICALL2_ADDRESSES.get(chain_id)
        elif multicall_address is not None:
            self._address = multicall_address
        self._available = None

    async def is_available(self) -> bool:
        """Whether the facility is deployed on the current network."""
        if self._available is not None:
            return self._available
        if not self._address:
            logger.info(f"[batch] No Multicall2 address known for chain {self._chain_id}")
            self._available = False
            return False

        address = self._address
        try:
            code = await self._retry.execute_with_retry(
                lambda ep: ep.transport.request("eth_getCode", [address, "latest"]),
                operation_name="eth_getCode(multicall)",
            )
        except ClassifiedError as e:
            # not cached; probed again on the next batch
            logger.warning(f"[batch] Could not probe Multicall2 at {address}: {e}")
            return False

        self._available = isinstance(code, str) and code not in ("0x", "0x0", "")
        if not self._available:
            logger.warning(f"[batch] No code at Multicall2 address {address} on chain {self._chain_id}")
        return self._available

    async def batch(self, calls: Sequence[BatchCall]) -> Optional[List[BatchResult]]:
        """
        Execute calls as one aggregate read.

        Returns:
            One BatchResult per call in input order, [] for no calls, or None
            when the batching facility is unavailable.
        """
        if not calls:
            return []
        if not await self.is_available():
            self._fallbacks += 1
            return None

        # Calls that cannot be encoded fail locally; the rest still go out.
        results: List[Optional[BatchResult]] = [None] * len(calls)
        pairs: List[Tuple[str, bytes]] = []
        slots: List[int] = []
        for i, call in enumerate(calls):
            try:
                pairs.append((to_checksum_address(call.target), call.call_data()))
                slots.append(i)
            except (DomainError, ValueError, TypeError) as e:
                logger.warning(f"[batch] Call {i} ({call.method.signature}) not encodable: {e}")
                results[i] = BatchResult(success=False)

        self._batches += 1
        self._calls += len(calls)

        if pairs:
            decoded = await self._aggregate(pairs)
            if decoded is None:
                self._failures += 1
                self._fallbacks += 1
                return None
            for slot, result in zip(slots, decoded):
                results[slot] = result

        return [r if r is not None else BatchResult(success=False) for r in results]

    async def _aggregate(self, pairs: List[Tuple[str, bytes]]) -> Optional[List[BatchResult]]:
        address = self._address
        payload = {"to": address, "data": encode_hex(encode_try_aggregate(pairs))}
        try:
            raw = await asyncio.wait_for(
                self._retry.execute_with_retry(
                    lambda ep: ep.transport.request("eth_call", [payload, "latest"]),
                    operation_name=f"multicall({len(pairs)})",
                ),
                timeout=self._batch_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[batch] Aggregate of {len(pairs)} calls exceeded {self._batch_timeout_ms}ms")
            return None
        except ClassifiedError as e:
            logger.warning(f"[batch] Aggregate of {len(pairs)} calls failed: {e}")
            return None

        try:
            decoded = decode_try_aggregate(raw)
        except DomainError as e:
            logger.warning(f"[batch] {e}")
            return None
        if len(decoded) != len(pairs):
            logger.warning(f"[batch] Expected {len(pairs)} results, got {len(decoded)}")
            return None
        return decoded

    @staticmethod
    def decode(call: BatchCall, result: BatchResult) -> Any:
        """
        Decode one slot. Pure.

        Raises:
            DomainError: the call failed on-chain or its data is undecodable.
        """
        if not result.success:
            reason = decode_revert_reason(result.return_data)
            message = f"{call.method.signature} failed" + (f": {reason}" if reason else "")
            raise DomainError(message, kind=ErrorKind.EXECUTION_REVERTED)
        return call.method.decode_result(result.return_data)

    @classmethod
    def decode_all(cls, calls: Sequence[BatchCall], results: Sequence[BatchResult]) -> List[Any]:
        """One decoded value per slot; None for failed or undecodable slots."""
        values: List[Any] = []
        for call, result in zip(calls, results):
            try:
                values.append(cls.decode(call, result))
            except DomainError as e:
                logger.debug(f"[batch] Slot {call.method.signature} -> None ({e.kind.value})")
                values.append(None)
        return values

    def get_metrics(self) -> Dict[str, Any]:
        """Get batcher metrics."""
        return {
            "chain_id": self._chain_id,
            "available": self._available,
            "batches": self._batches,
            "calls": self._calls,
            "failures": self._failures,
            "fallbacks": self._fallbacks,
        }
