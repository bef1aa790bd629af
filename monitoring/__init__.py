"""monitoring/__init__.py

Write lifecycle notifications and metrics export.

Submodules:
- lifecycle: LifecycleNotifier fan-out of user_approval/processing/confirmed/failed
- exporters: Metrics persistence (CSV)
"""

from .exporters import export_operation_log, export_run_metrics
from .lifecycle import LifecycleEvent, LifecycleNotifier, TxPhase

__all__ = [
    "LifecycleEvent",
    "LifecycleNotifier",
    "TxPhase",
    "export_operation_log",
    "export_run_metrics",
]
