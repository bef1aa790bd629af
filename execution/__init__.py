"""execution/__init__.py

Write side: transaction lifecycle state machine and orchestrator.
"""

from .models import PendingOperation, Receipt
from .tx_orchestrator import TransactionOrchestrator
from .tx_state_machine import TxLifecycle, TxState

__all__ = [
    "PendingOperation",
    "Receipt",
    "TransactionOrchestrator",
    "TxLifecycle",
    "TxState",
]
