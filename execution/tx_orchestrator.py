"""execution/tx_orchestrator.py

TransactionOrchestrator — submit one write and follow it to a terminal outcome.

HARD RULES:
- A write is never re-submitted once a handle exists
- Before a handle exists, a NetworkError is retried at most submission_retries times
- Receipt polling errors are logged; polling continues until the deadline
- TimedOut means "outcome unknown", not "failed"
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ingestion.rpc.abi import clean_revert_message, decode_revert_reason
from ingestion.rpc.client import LedgerClient
from ingestion.rpc.errors import (
    ClassifiedError,
    DomainError,
    NetworkError,
    Reverted,
    SubmissionFailed,
    TimedOut,
    UserCancelled,
)
from monitoring.lifecycle import LifecycleNotifier, TxPhase

from .models import PendingOperation, Receipt
from .tx_state_machine import TxLifecycle, TxState

logger = logging.getLogger(__name__)

# Signs, broadcasts and returns the transaction hash.
SubmitOp = Callable[[], Awaitable[str]]

REPLAY_FIELDS = ("from", "to", "gas", "value", "data")


class TransactionOrchestrator:
    """
    Write-side counterpart of RetryExecutor: no retries after submission.

    Lifecycle per write:
        user_approval -> op() -> processing -> [processing progress...] ->
        confirmed | failed
    """

    DEFAULT_TIMEOUT_MS = 300_000
    DEFAULT_POLL_INTERVAL_MS = 2000
    DEFAULT_PROGRESS_INTERVAL_MS = 10_000
    DEFAULT_REVERT_REASON_TIMEOUT_MS = 5000
    DEFAULT_SUBMISSION_RETRIES = 1

    def __init__(
        self,
        client: LedgerClient,
        notifier: Optional[LifecycleNotifier] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        progress_interval_ms: int = DEFAULT_PROGRESS_INTERVAL_MS,
        revert_reason_timeout_ms: int = DEFAULT_REVERT_REASON_TIMEOUT_MS,
        submission_retries: int = DEFAULT_SUBMISSION_RETRIES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize TransactionOrchestrator.

        Args:
            client: LedgerClient used for receipt polling and reason replay
            notifier: Lifecycle event fan-out (a private one if not provided)
            timeout_ms: Default inclusion deadline
            poll_interval_ms: Receipt polling period
            progress_interval_ms: Period of processing progress events
            revert_reason_timeout_ms: Budget for revert reason recovery
            submission_retries: NetworkError retries before a handle exists
            clock: Monotonic clock (injectable for tests)
            sleep: Awaitable sleep (injectable for tests)
        """
        self._client = client
        self._notifier = notifier or LifecycleNotifier()
        self._timeout_ms = timeout_ms
        self._poll_interval_ms = poll_interval_ms
        self._progress_interval_ms = progress_interval_ms
        self._revert_reason_timeout_ms = revert_reason_timeout_ms
        self._submission_retries = max(0, submission_retries)
        self._clock = clock
        self._sleep = sleep

        # Metrics
        self._stats: Dict[str, int] = {
            "submitted": 0,
            "confirmed": 0,
            "reverted": 0,
            "timed_out": 0,
            "user_cancelled": 0,
            "submission_failed": 0,
            "submission_retries": 0,
            "poll_errors": 0,
        }

    @classmethod
    def from_config(
        cls,
        client: LedgerClient,
        cfg: Any,
        notifier: Optional[LifecycleNotifier] = None,
    ) -> "TransactionOrchestrator":
        """Build from config.runtime_schema.ClientConfig."""
        return cls(
            client,
            notifier,
            timeout_ms=cfg.tx_timeout_ms,
            poll_interval_ms=cfg.tx_poll_interval_ms,
            progress_interval_ms=cfg.tx_progress_interval_ms,
            revert_reason_timeout_ms=cfg.revert_reason_timeout_ms,
            submission_retries=cfg.submission_retries,
        )

    @property
    def notifier(self) -> LifecycleNotifier:
        return self._notifier

    # ----------------------------------------------------------------- submit

    async def submit_and_monitor(
        self,
        op: SubmitOp,
        timeout_ms: Optional[int] = None,
        operation_name: str = "operation",
    ) -> Receipt:
        """
        Run op() once, then wait for inclusion.

        Args:
            op: Coroutine function that signs/broadcasts and returns the tx hash
            timeout_ms: Inclusion deadline (default from constructor)
            operation_name: Label echoed in lifecycle events and logs

        Returns:
            Receipt with status 1

        Raises:
            UserCancelled: the user rejected the write
            SubmissionFailed: no handle was obtained
            Reverted: included with status 0
            TimedOut: no receipt before the deadline; outcome unknown
        """
        lifecycle = TxLifecycle(operation_name)
        await self._notifier.notify(operation_name, TxPhase.USER_APPROVAL)

        handle_id = await self._submit(op, lifecycle)

        lifecycle.submitted(handle_id)
        self._stats["submitted"] += 1
        await self._notifier.notify(operation_name, TxPhase.PROCESSING, handle_id, elapsed_s=0.0)

        now = self._clock()
        budget_ms = timeout_ms if timeout_ms is not None else self._timeout_ms
        pending = PendingOperation(
            handle_id=handle_id,
            operation_name=operation_name,
            submitted_at=now,
            deadline=now + budget_ms / 1000.0,
        )
        lifecycle.transition(TxState.PENDING, f"waiting up to {budget_ms / 1000.0:.0f}s")

        receipt = await self._wait_for_receipt(pending)

        if receipt is None:
            waited = pending.elapsed(self._clock())
            lifecycle.transition(TxState.TIMED_OUT, f"no receipt after {waited:.1f}s")
            self._stats["timed_out"] += 1
            await self._notifier.notify(
                operation_name, TxPhase.FAILED, handle_id,
                reason="timed_out", ambiguous=True, elapsed_s=round(waited, 1),
            )
            raise TimedOut(handle_id, waited_s=waited)

        if receipt.succeeded:
            lifecycle.transition(TxState.CONFIRMED_SUCCESS, f"block {receipt.block_number}")
            self._stats["confirmed"] += 1
            await self._notifier.notify(
                operation_name, TxPhase.CONFIRMED, handle_id,
                block_number=receipt.block_number, elapsed_s=round(receipt.elapsed_s, 1),
                explorer_url=receipt.explorer_url,
            )
            return receipt

        lifecycle.transition(TxState.CONFIRMED_REVERTED, f"block {receipt.block_number}")
        self._stats["reverted"] += 1
        reason = await self.recover_revert_reason(receipt)
        await self._notifier.notify(
            operation_name, TxPhase.FAILED, handle_id,
            reason="reverted", revert_reason=reason, block_number=receipt.block_number,
            explorer_url=receipt.explorer_url,
        )
        raise Reverted(reason, receipt=receipt)

    async def _submit(self, op: SubmitOp, lifecycle: TxLifecycle) -> str:
        """Obtain a handle. The only place a write may be retried."""
        name = lifecycle.operation_name
        retries_left = self._submission_retries
        while True:
            try:
                handle_id = await op()
            except UserCancelled:
                lifecycle.transition(TxState.FAILED, "user cancelled")
                self._stats["user_cancelled"] += 1
                await self._notifier.notify(name, TxPhase.FAILED, reason="user_cancelled")
                raise
            except NetworkError as e:
                if retries_left > 0:
                    retries_left -= 1
                    self._stats["submission_retries"] += 1
                    logger.warning(f"[tx] {name}: submission failed before a handle existed ({e.kind.value}); retrying once")
                    continue
                raise await self._submission_failed(lifecycle, e)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise await self._submission_failed(lifecycle, e)

            if not isinstance(handle_id, str) or not handle_id:
                raise await self._submission_failed(
                    lifecycle, DomainError(f"submit returned no handle: {handle_id!r}")
                )
            return handle_id

    async def _submission_failed(self, lifecycle: TxLifecycle, cause: BaseException) -> SubmissionFailed:
        lifecycle.transition(TxState.FAILED, f"submission failed: {cause}")
        self._stats["submission_failed"] += 1
        await self._notifier.notify(lifecycle.operation_name, TxPhase.FAILED, reason="submission_failed", error=str(cause))
        endpoint = getattr(cause, "endpoint", None)
        error = SubmissionFailed(f"{lifecycle.operation_name}: {cause}", cause=cause, endpoint=endpoint)
        error.__cause__ = cause
        return error

    # ------------------------------------------------------------------- wait

    async def _wait_for_receipt(self, pending: PendingOperation) -> Optional[Receipt]:
        """Poll until a decodable receipt arrives or the deadline passes."""
        progress_every = self._progress_interval_ms / 1000.0
        next_progress = pending.submitted_at + progress_every

        while True:
            remaining = pending.remaining(self._clock())
            if remaining <= 0:
                return None

            raw = None
            try:
                raw = await asyncio.wait_for(
                    self._client.get_transaction_receipt(pending.handle_id),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                return None
            except ClassifiedError as e:
                self._stats["poll_errors"] += 1
                logger.warning(f"[tx] {pending.operation_name}: receipt poll failed ({e}); still waiting")

            now = self._clock()
            if raw is not None:
                if now > pending.deadline:
                    # arrived after the deadline; discarded
                    return None
                try:
                    return Receipt.from_rpc(
                        raw,
                        elapsed_s=pending.elapsed(now),
                        explorer_url=self._client.explorer_tx_url(pending.handle_id),
                    )
                except DomainError as e:
                    self._stats["poll_errors"] += 1
                    logger.warning(f"[tx] {pending.operation_name}: {e}; still waiting")

            if now >= next_progress:
                elapsed = pending.elapsed(now)
                logger.info(f"[tx] {pending.operation_name} ({pending.handle_id}) still pending after {elapsed:.0f}s")
                await self._notifier.notify(
                    pending.operation_name, TxPhase.PROCESSING, pending.handle_id,
                    elapsed_s=round(elapsed, 1),
                )
                while next_progress <= now:
                    next_progress += progress_every

            delay = min(self._poll_interval_ms / 1000.0, max(0.0, pending.remaining(now)))
            await self._sleep(delay)

    # ----------------------------------------------------------------- reason

    async def recover_revert_reason(self, receipt: Receipt) -> Optional[str]:
        """
        Best effort: replay the transaction as eth_call at its block and
        decode the revert payload. None when unknown.
        """
        try:
            return await asyncio.wait_for(
                self._replay_for_reason(receipt),
                timeout=self._revert_reason_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.info(f"[tx] Revert reason for {receipt.handle_id} not recovered within {self._revert_reason_timeout_ms}ms")
        except ClassifiedError as e:
            logger.info(f"[tx] Revert reason for {receipt.handle_id} unavailable: {e}")
        return None

    async def _replay_for_reason(self, receipt: Receipt) -> Optional[str]:
        tx = await self._client.get_transaction(receipt.handle_id)
        if not tx:
            return None
        call = {key: tx[key] for key in REPLAY_FIELDS if tx.get(key) is not None}
        if "data" not in call and tx.get("input") is not None:
            call["data"] = tx["input"]
        try:
            await self._client.call_raw(call, hex(receipt.block_number), use_cache=False)
        except DomainError as e:
            return reason_from_error(e)
        # replay did not revert; state has moved on
        return None

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._stats)


def reason_from_error(error: ClassifiedError) -> Optional[str]:
    """Revert reason from a node error: revert data first, then the message."""
    data = error.data
    if isinstance(data, dict):
        data = data.get("data")
    reason = decode_revert_reason(data) if isinstance(data, (str, bytes)) else None
    if reason:
        return reason

    marker = "execution reverted"
    text = error.message or ""
    if marker not in text:
        return None
    tail = clean_revert_message(text[text.index(marker):])
    if not tail or tail == marker:
        return None
    return tail
