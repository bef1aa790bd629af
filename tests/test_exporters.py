import csv

from execution.models import Receipt
from ingestion.rpc.errors import TimedOut
from monitoring.exporters import export_operation_log, export_run_metrics, flatten_metrics


def _rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def test_flatten_metrics():
    flat = flatten_metrics({
        "requests": 3,
        "pool": {"admitted": ["a", "b"], "rotations": 1},
        "cache": {"hits": 2},
    })

    assert flat == {
        "requests": 3,
        "pool_admitted": "a,b",
        "pool_rotations": 1,
        "cache_hits": 2,
    }


def test_export_run_metrics_appends_with_single_header(tmp_path):
    path = tmp_path / "out" / "metrics.csv"
    metrics = {"requests": 1, "retry": {"retries": 0}}

    assert export_run_metrics(metrics, str(path), timestamp="t1")
    assert export_run_metrics({**metrics, "requests": 2, "extra": 9}, str(path), timestamp="t2")

    rows = _rows(path)
    assert [r["requests"] for r in rows] == ["1", "2"]
    assert rows[1]["timestamp"] == "t2"
    assert "extra" not in rows[1]


def test_export_operation_log(tmp_path):
    path = tmp_path / "ops.csv"
    receipt = Receipt(handle_id="0xabc", block_number=7, gas_used=21000, status=1, elapsed_s=4.2)
    timed_out = TimedOut("0xdef", waited_s=60.0)

    assert export_operation_log([receipt.to_dict(), timed_out.to_dict()], str(path))
    assert export_operation_log([], str(path))

    rows = _rows(path)
    assert [r["handle_id"] for r in rows] == ["0xabc", "0xdef"]
    assert rows[1]["kind"] == "timed_out"
    assert rows[0]["export_timestamp"]
