"""monitoring/exporters.py

CSV export of client metrics snapshots and write outcomes.

Design goals:
- One row per snapshot / outcome, appended; the header is written once
- Failures are reported on stderr and returned as False, never raised
- stdout stays clean for the JSON printed by scripts
"""

from __future__ import annotations

import csv
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def flatten_metrics(
    metrics: Dict[str, Any],
    prefix: str = "",
    delimiter: str = "_",
) -> Dict[str, Any]:
    """Collapse nested get_metrics() dicts into one level.

    {"pool": {"admitted": 2}} becomes {"pool_admitted": 2}. Sequences are
    joined with commas and enum members are written by value.
    """
    flat: Dict[str, Any] = {}
    for name, value in metrics.items():
        column = f"{prefix}{delimiter}{name}" if prefix else str(name)
        if isinstance(value, dict):
            flat.update(flatten_metrics(value, column, delimiter))
        elif isinstance(value, (list, tuple)):
            flat[column] = ",".join(str(item) for item in value)
        elif isinstance(value, Enum):
            flat[column] = value.value
        else:
            flat[column] = value
    return flat


def export_run_metrics(
    metrics: Dict[str, Any],
    path: str,
    timestamp: Optional[str] = None,
) -> bool:
    """Append one snapshot, e.g. LedgerClient.get_metrics().

    Args:
        metrics: Nested metrics dict.
        path: CSV file; parent directories are created.
        timestamp: Row timestamp [default: now, UTC ISO-8601].

    Returns:
        False when the file could not be written.
    """
    row = flatten_metrics(metrics)
    row["timestamp"] = timestamp or _utc_now()
    return _append_rows([row], Path(path))


def export_operation_log(
    outcomes: List[Dict[str, Any]],
    path: str,
) -> bool:
    """Append write outcomes: Receipt.to_dict() or ClassifiedError.to_dict() rows."""
    if not outcomes:
        print("[Export] Operation log: nothing to write", file=sys.stderr)
        return True

    exported_at = _utc_now()
    rows = [dict(flatten_metrics(outcome), export_timestamp=exported_at) for outcome in outcomes]
    return _append_rows(rows, Path(path))


def _columns(rows: Iterable[Dict[str, Any]]) -> List[str]:
    names = set()
    for row in rows:
        names.update(row)
    return sorted(names)


def _append_rows(rows: List[Dict[str, Any]], target: Path) -> bool:
    """Append rows under the existing header, or create the file with a sorted union header.

    Columns the existing header does not know are dropped.
    """
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fresh = not target.exists() or target.stat().st_size == 0
        if fresh:
            header = _columns(rows)
        else:
            with target.open("r", newline="", encoding="utf-8") as existing:
                header = next(csv.reader(existing), [])

        with target.open("a", newline="", encoding="utf-8") as out:
            writer = csv.DictWriter(out, fieldnames=header, extrasaction="ignore")
            if fresh:
                writer.writeheader()
            writer.writerows(rows)
    except OSError as e:
        print(f"[Export] Could not append to {target}: {e}", file=sys.stderr)
        return False

    print(f"[Export] {len(rows)} row(s) -> {target}", file=sys.stderr)
    return True
