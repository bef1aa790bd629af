"""execution/models.py

Data models for submitted ledger operations: the pending operation record and
the canonical receipt decode.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ingestion.rpc.errors import DomainError, ErrorKind
from ingestion.rpc.pool import parse_quantity


@dataclass
class PendingOperation:
    """
    A write that has a handle and awaits inclusion.

    Attributes:
        handle_id: Transaction hash returned by the submit step.
        operation_name: Caller label, echoed in lifecycle events.
        submitted_at: Monotonic time the handle was obtained.
        deadline: Monotonic time after which the client stops waiting.
        submitted_wall: Wall clock time of submission (for logs / exports).
    """
    handle_id: str
    operation_name: str
    submitted_at: float
    deadline: float
    submitted_wall: float = field(default_factory=time.time)

    def elapsed(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.submitted_at

    def remaining(self, now: Optional[float] = None) -> float:
        return self.deadline - (time.monotonic() if now is None else now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle_id": self.handle_id,
            "operation_name": self.operation_name,
            "submitted_wall": self.submitted_wall,
            "timeout_s": round(self.deadline - self.submitted_at, 3),
        }


@dataclass(frozen=True)
class Receipt:
    """
    Inclusion receipt of a write.

    status is 1 for success and 0 for revert; anything else is rejected by
    from_rpc.
    """
    handle_id: str
    block_number: int
    gas_used: int
    status: int
    effective_gas_price: Optional[int] = None
    elapsed_s: float = 0.0
    explorer_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def gas_cost(self) -> Optional[int]:
        if self.effective_gas_price is None:
            return None
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(
        cls,
        raw: Dict[str, Any],
        *,
        elapsed_s: float = 0.0,
        explorer_url: Optional[str] = None,
    ) -> "Receipt":
        """
        Decode an eth_getTransactionReceipt result.

        Raises:
            DomainError(MALFORMED_RESPONSE): missing or unparseable fields.
        """
        if not isinstance(raw, dict):
            raise DomainError(f"receipt is not an object: {type(raw).__name__}", kind=ErrorKind.MALFORMED_RESPONSE)
        try:
            status = parse_quantity(raw["status"])
            receipt = cls(
                handle_id=raw["transactionHash"],
                block_number=parse_quantity(raw["blockNumber"]),
                gas_used=parse_quantity(raw.get("gasUsed", 0)),
                status=status,
                effective_gas_price=(
                    parse_quantity(raw["effectiveGasPrice"])
                    if raw.get("effectiveGasPrice") is not None
                    else None
                ),
                elapsed_s=elapsed_s,
                explorer_url=explorer_url,
                raw=dict(raw),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DomainError(f"malformed receipt: {e}", kind=ErrorKind.MALFORMED_RESPONSE) from e
        if status not in (0, 1):
            raise DomainError(f"unknown receipt status {status}", kind=ErrorKind.MALFORMED_RESPONSE)
        return receipt

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary (raw payload excluded)."""
        return {
            "handle_id": self.handle_id,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "status": self.status,
            "effective_gas_price": self.effective_gas_price,
            "elapsed_s": round(self.elapsed_s, 3),
            "explorer_url": self.explorer_url,
        }
