"""
Transaction State Machine

Lifecycle of one submitted write.

HARD RULES:
- Created -> Submitted -> Pending -> {ConfirmedSuccess | ConfirmedReverted | TimedOut}
- Failed only before a handle exists (cancelled or submission failed)
- Terminal states are final; a write is never re-submitted
- All state transitions logged with reason
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TxState(Enum):
    """Write lifecycle states."""
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    CONFIRMED_SUCCESS = "CONFIRMED_SUCCESS"
    CONFIRMED_REVERTED = "CONFIRMED_REVERTED"
    TIMED_OUT = "TIMED_OUT"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({
    TxState.CONFIRMED_SUCCESS,
    TxState.CONFIRMED_REVERTED,
    TxState.TIMED_OUT,
    TxState.FAILED,
})

ALLOWED_TRANSITIONS: Dict[TxState, frozenset] = {
    TxState.CREATED: frozenset({TxState.SUBMITTED, TxState.FAILED}),
    TxState.SUBMITTED: frozenset({TxState.PENDING}),
    TxState.PENDING: frozenset({
        TxState.CONFIRMED_SUCCESS,
        TxState.CONFIRMED_REVERTED,
        TxState.TIMED_OUT,
    }),
}


class InvalidTransition(RuntimeError):
    """Raised on a transition the lifecycle does not allow."""


@dataclass
class TxLifecycle:
    """
    State holder for one write.

    Attributes:
        operation_name: Caller label
        state: Current state
        handle_id: Set on SUBMITTED
        history: (old, new, reason) for every transition taken
    """
    operation_name: str
    state: TxState = TxState.CREATED
    handle_id: Optional[str] = None
    history: List[Tuple[TxState, TxState, str]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def has_handle(self) -> bool:
        return self.handle_id is not None

    def transition(self, new_state: TxState, reason: str = "") -> None:
        """Validate, apply and log a transition."""
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransition(
                f"{self.operation_name}: {self.state.value} -> {new_state.value} not allowed"
            )
        old = self.state
        self.state = new_state
        self.history.append((old, new_state, reason))
        log_transition(self, old, new_state, reason)

    def submitted(self, handle_id: str) -> None:
        self.handle_id = handle_id
        self.transition(TxState.SUBMITTED, f"handle {handle_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "state": self.state.value,
            "handle_id": self.handle_id,
            "history": [(old.value, new.value, reason) for old, new, reason in self.history],
        }


# Transition logging helper
def log_transition(
    lifecycle: TxLifecycle,
    old_state: TxState,
    new_state: TxState,
    reason: str,
) -> None:
    """Log write state transition."""
    level = logging.WARNING if new_state in (TxState.TIMED_OUT, TxState.CONFIRMED_REVERTED, TxState.FAILED) else logging.INFO
    logger.log(
        level,
        f"[tx] Transition: {lifecycle.operation_name} ({lifecycle.handle_id or '-'}) "
        f"{old_state.value} -> {new_state.value} "
        f"(reason: {reason or '-'})",
    )
