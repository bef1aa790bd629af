"""monitoring/lifecycle.py

Lifecycle notifications for submitted writes.

Every write reports its progress as a sequence of phases:
user_approval -> processing (repeated with progress) -> confirmed | failed.

Design goals:
- Listeners are plain callables or coroutine functions
- Fail-safe: a listener error is logged and never breaks the write flow
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class TxPhase(Enum):
    """Phases surfaced to the caller."""
    USER_APPROVAL = "user_approval"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class LifecycleEvent:
    """One notification.

    Attributes:
        operation_name: Caller label of the write.
        phase: TxPhase.
        timestamp: Wall clock seconds.
        handle_id: Transaction hash once known.
        detail: Free-form context (elapsed seconds, "reverted", "timed_out", ...).
    """
    operation_name: str
    phase: TxPhase
    timestamp: float = field(default_factory=time.time)
    handle_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "phase": self.phase.value,
            "timestamp": self.timestamp,
            "handle_id": self.handle_id,
            "detail": dict(self.detail),
        }


Listener = Callable[[LifecycleEvent], Any]


class LifecycleNotifier:
    """Fan-out of LifecycleEvents to subscribed listeners."""

    def __init__(self, listeners: Optional[List[Listener]] = None):
        self._listeners: List[Listener] = list(listeners or [])
        self._emitted = 0
        self._listener_errors = 0

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Listener) -> bool:
        if listener in self._listeners:
            self._listeners.remove(listener)
            return True
        return False

    async def emit(self, event: LifecycleEvent) -> None:
        """Deliver to every listener in subscription order."""
        self._emitted += 1
        logger.debug(f"[tx] {event.operation_name}: {event.phase.value} {event.detail or ''}")
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._listener_errors += 1
                logger.error(f"[tx] Lifecycle listener failed on {event.phase.value}: {e}")

    async def notify(
        self,
        operation_name: str,
        phase: TxPhase,
        handle_id: Optional[str] = None,
        **detail: Any,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            operation_name=operation_name,
            phase=phase,
            handle_id=handle_id,
            detail=detail,
        )
        await self.emit(event)
        return event

    def get_metrics(self) -> Dict[str, int]:
        return {
            "listeners": len(self._listeners),
            "emitted": self._emitted,
            "listener_errors": self._listener_errors,
        }


class EventRecorder:
    """Listener that keeps every event; handy for diagnostics and tests."""

    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    def __call__(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    @property
    def phases(self) -> List[str]:
        return [e.phase.value for e in self.events]
