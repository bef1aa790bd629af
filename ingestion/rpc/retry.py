"""
ingestion/rpc/retry.py

RetryExecutor — one retry-with-failover policy for every read.

Policy:
- NetworkError: report failure, rotate off the failed endpoint, back off
  base_delay * 2^(attempt-1), retry
- DomainError (and any other ClassifiedError): raise immediately, no rotation
- Anything else is a programming error and propagates untouched
- Out of attempts: EndpointsExhausted with the full attempt history

Writes never go through here (see execution/tx_orchestrator.py).
"""
import asyncio
import functools
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import AttemptRecord, EndpointsExhausted, NetworkError
from .pool import Endpoint, EndpointPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

EndpointOp = Callable[[Endpoint], Awaitable[T]]


class RetryExecutor:
    """
    Runs endpoint-bound operations against the pool with retry and rotation.
    """

    DEFAULT_MAX_ATTEMPTS = 3
    DEFAULT_BASE_DELAY_MS = 400

    def __init__(
        self,
        pool: EndpointPool,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize RetryExecutor.

        Args:
            pool: EndpointPool to draw endpoints from
            max_attempts: Default attempts per read (>= 1)
            base_delay_ms: Backoff base; attempt n waits base * 2^(n-1)
            sleep: Awaitable sleep (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._pool = pool
        self._max_attempts = max_attempts
        self._base_delay_ms = base_delay_ms
        self._sleep = sleep

        # Metrics
        self._calls = 0
        self._retries = 0
        self._exhausted = 0

    @property
    def pool(self) -> EndpointPool:
        return self._pool

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @staticmethod
    def backoff_ms(base_delay_ms: float, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return base_delay_ms * (2 ** (attempt - 1))

    async def execute_with_retry(
        self,
        op: EndpointOp,
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[float] = None,
        operation_name: str = "read",
    ) -> Any:
        """
        Run op(endpoint) until it succeeds or attempts run out.

        Args:
            op: Coroutine function taking the current Endpoint
            max_attempts: Override default attempts
            base_delay_ms: Override default backoff base
            operation_name: Used in log lines only

        Returns:
            Whatever op returns

        Raises:
            DomainError: on the first domain-class failure
            EndpointsExhausted: when every attempt failed with a NetworkError
            PoolEmptyError: when the pool has no admitted endpoint
        """
        attempts_allowed = max_attempts if max_attempts is not None else self._max_attempts
        base = base_delay_ms if base_delay_ms is not None else self._base_delay_ms
        if attempts_allowed < 1:
            raise ValueError("max_attempts must be >= 1")

        self._calls += 1
        history: List[AttemptRecord] = []

        for attempt in range(1, attempts_allowed + 1):
            endpoint = self._pool.current_endpoint()
            start = time.monotonic()
            try:
                result = await op(endpoint)
            except NetworkError as e:
                history.append(AttemptRecord(url=endpoint.url, kind=e.kind, message=e.message))
                await self._pool.report_failure(endpoint, e)

                if attempt >= attempts_allowed:
                    self._exhausted += 1
                    logger.error(
                        f"[retry] {operation_name} failed after {attempt} attempts "
                        f"({', '.join(a.kind.value for a in history)})"
                    )
                    raise EndpointsExhausted(history, e) from e

                all_tried = await self._pool.rotate(endpoint)
                delay_ms = self.backoff_ms(base, attempt)
                self._retries += 1
                logger.warning(
                    f"[retry] {operation_name} attempt {attempt}/{attempts_allowed} on {endpoint.url} "
                    f"failed ({e.kind.value}); retrying in {delay_ms:.0f}ms"
                    + (" (every endpoint tried)" if all_tried else "")
                )
                await self._sleep(delay_ms / 1000.0)
                continue

            await self._pool.report_success(endpoint, (time.monotonic() - start) * 1000)
            return result

        # unreachable: the loop either returns or raises
        raise AssertionError("retry loop exited without result")

    def wrap(
        self,
        op: EndpointOp,
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[float] = None,
        operation_name: Optional[str] = None,
    ) -> Callable[[], Awaitable[Any]]:
        """Return a no-arg coroutine function that runs op under this policy."""
        name = operation_name or getattr(op, "__name__", "read")

        @functools.wraps(op)
        async def wrapped() -> Any:
            return await self.execute_with_retry(
                op,
                max_attempts=max_attempts,
                base_delay_ms=base_delay_ms,
                operation_name=name,
            )

        return wrapped

    def get_metrics(self):
        return {
            "calls": self._calls,
            "retries": self._retries,
            "exhausted": self._exhausted,
        }
