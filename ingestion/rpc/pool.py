"""ingestion/rpc/pool.py

EndpointPool — admission checks, rotation and demotion of RPC endpoints.

Features:
- Concurrent admission probes (chain identity + head height) with a
  shorter budget for local endpoints and a longer one for remote endpoints
- Deterministic selection in configured order (no randomness)
- Rotation serialized by one asyncio.Lock; a rotation for an endpoint that is
  no longer current is a no-op, so concurrent failures never skip a
  healthy endpoint
- Demotion after repeated failures, readmission after a passing re-probe
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .errors import (
    ClassifiedError,
    ErrorKind,
    NetworkError,
    PoolEmptyError,
)
from .transport import Transport, TransportFactory, default_transport_factory

logger = logging.getLogger(__name__)


LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})


def is_local_url(url: str) -> bool:
    """True for endpoints believed to be on this machine."""
    host = urlparse(url).hostname or ""
    return host.lower() in LOCAL_HOSTS


def dedupe_urls(urls: Iterable[str]) -> List[str]:
    """Drop empty and repeated URLs, preserving configured order."""
    out: List[str] = []
    seen = set()
    for url in urls:
        url = (url or "").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        out.append(url)
    return out


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity ("0x89" or 137)."""
    if isinstance(value, bool):
        raise ValueError(f"not a quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    raise ValueError(f"not a quantity: {value!r}")


@dataclass
class Endpoint:
    """One candidate RPC endpoint and its observed health."""
    url: str
    transport: Optional[Transport] = field(default=None, repr=False)
    order: int = 0
    last_latency_ms: float = 0.0
    last_chain_id: Optional[int] = None
    last_height: Optional[int] = None
    consecutive_failures: int = 0
    admitted: bool = False
    last_error: Optional[ErrorKind] = None
    last_checked: Optional[datetime] = None

    @property
    def is_local(self) -> bool:
        return is_local_url(self.url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "admitted": self.admitted,
            "latency_ms": round(self.last_latency_ms, 1),
            "chain_id": self.last_chain_id,
            "height": self.last_height,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error.value if self.last_error else None,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }


class EndpointPool:
    """
    Ordered set of admitted endpoints plus a rotation cursor.

    Invariant: the cursor indexes an admitted endpoint, or the pool is empty
    and current_endpoint() raises PoolEmptyError.
    """

    DEFAULT_LOCAL_TIMEOUT_MS = 3000
    DEFAULT_REMOTE_TIMEOUT_MS = 8000
    DEFAULT_FAILURE_THRESHOLD = 3
    DEFAULT_REQUEST_TIMEOUT_MS = 8000

    def __init__(
        self,
        *,
        transport_factory: TransportFactory = default_transport_factory,
        local_timeout_ms: int = DEFAULT_LOCAL_TIMEOUT_MS,
        remote_timeout_ms: int = DEFAULT_REMOTE_TIMEOUT_MS,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        max_admitted: Optional[int] = None,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    ):
        """
        Initialize EndpointPool.

        Args:
            transport_factory: Builds a transport for (url, timeout_ms)
            local_timeout_ms: Admission budget for local endpoints
            remote_timeout_ms: Admission budget for remote endpoints
            failure_threshold: Consecutive failures before demotion
            max_admitted: Stop admitting once this many probes passed
            request_timeout_ms: Per-request timeout of admitted transports
        """
        self._transport_factory = transport_factory
        self._local_timeout_ms = local_timeout_ms
        self._remote_timeout_ms = remote_timeout_ms
        self._failure_threshold = failure_threshold
        self._max_admitted = max_admitted
        self._request_timeout_ms = request_timeout_ms

        self._candidates: List[Endpoint] = []
        self._admitted: List[Endpoint] = []
        self._cursor = 0
        self._tried_since_success = 0
        self._expected_chain_id: Optional[int] = None
        self._lock = asyncio.Lock()

        # Metrics
        self._rotations = 0
        self._demotions = 0
        self._builds = 0

    @property
    def expected_chain_id(self) -> Optional[int]:
        return self._expected_chain_id

    def admission_timeout_ms(self, url: str) -> int:
        return self._local_timeout_ms if is_local_url(url) else self._remote_timeout_ms

    # ------------------------------------------------------------------ build

    async def build_pool(self, candidate_urls: Iterable[str], expected_chain_id: int) -> List[Endpoint]:
        """
        Probe every candidate concurrently and admit the healthy ones.

        Admission failures are logged with a classified reason and never
        abort the build. The returned list may be empty.
        """
        urls = dedupe_urls(candidate_urls)
        self._expected_chain_id = expected_chain_id
        self._builds += 1

        candidates = [
            Endpoint(url=url, order=i, transport=self._transport_factory(url, self._request_timeout_ms))
            for i, url in enumerate(urls)
        ]
        logger.info(f"[pool] Probing {len(candidates)} endpoints for chain {expected_chain_id}")

        admitted = await self._probe_all(candidates)

        async with self._lock:
            self._candidates = candidates
            self._admitted = sorted(admitted, key=lambda e: e.order)
            self._cursor = 0
            self._tried_since_success = 0

        for ep in candidates:
            if ep.admitted:
                logger.info(f"[pool] Admitted {ep.url} (chain={ep.last_chain_id}, height={ep.last_height}, {ep.last_latency_ms:.0f}ms)")

        if not self._admitted:
            logger.error(f"[pool] No endpoint admitted out of {len(candidates)} candidates")
        else:
            logger.info(f"[pool] {len(self._admitted)}/{len(candidates)} endpoints admitted")
        return list(self._admitted)

    async def _probe_all(self, candidates: List[Endpoint]) -> List[Endpoint]:
        """Run probes concurrently; first successes fill the pool."""
        if not candidates:
            return []

        tasks = [asyncio.ensure_future(self._probe(ep)) for ep in candidates]
        admitted: List[Endpoint] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                ep = await next_done
                if ep is not None:
                    admitted.append(ep)
                    if self._max_admitted is not None and len(admitted) >= self._max_admitted:
                        logger.info(f"[pool] Sufficient endpoints admitted ({len(admitted)}), stopping probes")
                        break
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return admitted

    async def _probe(self, ep: Endpoint) -> Optional[Endpoint]:
        """Admission check: identity + height within the endpoint's budget."""
        budget_ms = self.admission_timeout_ms(ep.url)
        start = time.monotonic()
        ep.last_checked = datetime.now(timezone.utc)
        try:
            chain_id, height = await asyncio.wait_for(self._identity_and_height(ep), timeout=budget_ms / 1000.0)
        except asyncio.TimeoutError:
            self._reject(ep, ErrorKind.TIMEOUT, f"no answer within {budget_ms}ms")
            return None
        except ClassifiedError as e:
            self._reject(ep, e.kind, e.message)
            return None

        ep.last_latency_ms = (time.monotonic() - start) * 1000
        ep.last_chain_id = chain_id
        ep.last_height = height

        if chain_id != self._expected_chain_id:
            self._reject(ep, ErrorKind.WRONG_IDENTITY, f"expected chain {self._expected_chain_id}, got {chain_id}")
            return None

        ep.admitted = True
        ep.consecutive_failures = 0
        ep.last_error = None
        return ep

    async def _identity_and_height(self, ep: Endpoint) -> Tuple[int, int]:
        transport = ep.transport
        if transport is None:
            transport = ep.transport = self._transport_factory(ep.url, self._request_timeout_ms)
        try:
            chain_id = parse_quantity(await transport.request("eth_chainId", []))
            height = parse_quantity(await transport.request("eth_blockNumber", []))
        except ValueError as e:
            raise NetworkError(f"unparseable probe response: {e}", kind=ErrorKind.TRANSPORT, endpoint=ep.url)
        return chain_id, height

    def _reject(self, ep: Endpoint, kind: ErrorKind, detail: str) -> None:
        ep.admitted = False
        ep.last_error = kind
        logger.warning(f"[pool] Rejected {ep.url}: {kind.value} ({detail})")

    async def rebuild(self, candidate_urls: Iterable[str], expected_chain_id: int) -> List[Endpoint]:
        """Network-context switch: drop every endpoint and build from scratch."""
        await self.close()
        return await self.build_pool(candidate_urls, expected_chain_id)

    # --------------------------------------------------------------- rotation

    def current_endpoint(self) -> Endpoint:
        """Endpoint at the rotation cursor."""
        if not self._admitted:
            raise PoolEmptyError("no admitted endpoints")
        return self._admitted[self._cursor]

    async def rotate(self, failed: Optional[Endpoint] = None) -> bool:
        """
        Advance the cursor modulo pool size.

        Args:
            failed: Endpoint the caller just saw fail. If the cursor already
                moved off it (another caller rotated first), the cursor stays.

        Returns:
            True once every admitted endpoint was tried since the last success.
        """
        async with self._lock:
            if not self._admitted:
                raise PoolEmptyError("no admitted endpoints")
            if failed is None or self._admitted[self._cursor] is failed:
                self._cursor = (self._cursor + 1) % len(self._admitted)
                self._tried_since_success += 1
                self._rotations += 1
                logger.debug(f"[pool] Rotated to {self._admitted[self._cursor].url}")
            return self._tried_since_success >= len(self._admitted)

    async def report_success(self, endpoint: Endpoint, latency_ms: Optional[float] = None) -> None:
        async with self._lock:
            endpoint.consecutive_failures = 0
            endpoint.last_error = None
            if latency_ms is not None:
                endpoint.last_latency_ms = latency_ms
            self._tried_since_success = 0

    async def report_failure(self, endpoint: Endpoint, error: ClassifiedError) -> None:
        """Count a failure; demote the endpoint at the threshold.

        The last admitted endpoint is never demoted.
        """
        async with self._lock:
            endpoint.consecutive_failures += 1
            endpoint.last_error = error.kind
            if (
                endpoint.consecutive_failures >= self._failure_threshold
                and endpoint.admitted
                and len(self._admitted) > 1
                and endpoint in self._admitted
            ):
                self._demote(endpoint)

    def _demote(self, endpoint: Endpoint) -> None:
        """Remove from rotation. Caller holds the lock."""
        index = self._admitted.index(endpoint)
        current = self._admitted[self._cursor]
        self._admitted.pop(index)
        endpoint.admitted = False
        self._demotions += 1
        if current is endpoint:
            # the slot now holds the next endpoint
            self._cursor = index % len(self._admitted)
        else:
            self._cursor = self._admitted.index(current)
        logger.warning(
            f"[pool] Demoted {endpoint.url} after {endpoint.consecutive_failures} consecutive failures "
            f"({len(self._admitted)} remain)"
        )

    # ------------------------------------------------------------ readmission

    async def readmit_demoted(self) -> List[Endpoint]:
        """Re-probe candidates that are not admitted and re-insert survivors.

        Only endpoints of the build that is still current are re-inserted;
        probes that outlive a rebuild are discarded and their transports closed.
        """
        async with self._lock:
            pending = [ep for ep in self._candidates if not ep.admitted]
        if not pending:
            return []

        results = await asyncio.gather(*(self._probe(ep) for ep in pending))

        readmitted: List[Endpoint] = []
        async with self._lock:
            live = [ep for ep in pending if any(ep is c for c in self._candidates)]
            stale = [ep for ep in pending if not any(ep is c for c in live)]
            for ep in stale:
                ep.admitted = False
            survivors = [ep for ep in results if ep is not None and any(ep is c for c in live)]
            if survivors:
                current = self._admitted[self._cursor] if self._admitted else None
                for ep in survivors:
                    if not any(ep is a for a in self._admitted):
                        self._admitted.append(ep)
                    readmitted.append(ep)
                self._admitted.sort(key=lambda e: e.order)
                self._cursor = self._admitted.index(current) if current is not None else 0

        for ep in stale:
            logger.info(f"[pool] Discarded probe of {ep.url}: pool was rebuilt meanwhile")
            if ep.transport is not None:
                await ep.transport.close()
                ep.transport = None
        for ep in readmitted:
            logger.info(f"[pool] Readmitted {ep.url}")
        return readmitted

    # ----------------------------------------------------------------- status

    @property
    def admitted(self) -> List[Endpoint]:
        return list(self._admitted)

    @property
    def candidates(self) -> List[Endpoint]:
        return list(self._candidates)

    def status(self) -> Dict[str, Any]:
        current = self._admitted[self._cursor].url if self._admitted else None
        return {
            "expected_chain_id": self._expected_chain_id,
            "current": current,
            "admitted": [ep.url for ep in self._admitted],
            "endpoints": [ep.to_dict() for ep in self._candidates],
        }

    def get_metrics(self) -> Dict[str, int]:
        return {
            "candidates": len(self._candidates),
            "admitted": len(self._admitted),
            "rotations": self._rotations,
            "demotions": self._demotions,
            "builds": self._builds,
        }

    async def close(self) -> None:
        """Close every transport and empty the pool."""
        async with self._lock:
            candidates = self._candidates
            self._candidates = []
            self._admitted = []
            self._cursor = 0
            self._tried_since_success = 0
        for ep in candidates:
            if ep.transport is not None:
                await ep.transport.close()
                ep.transport = None

    def __len__(self) -> int:
        return len(self._admitted)

    def __contains__(self, url: str) -> bool:
        return any(ep.url == url for ep in self._admitted)
