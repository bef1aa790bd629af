from __future__ import annotations

import importlib.util
import json
from pathlib import Path

import pytest

from config.runtime_schema import parse_settings
from ingestion.rpc.client import LedgerClient
from tests.fakes import HOLDERS

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "ledger_probe.py"
spec = importlib.util.spec_from_file_location("ledger_probe", SCRIPT)
ledger_probe = importlib.util.module_from_spec(spec)
spec.loader.exec_module(ledger_probe)

A = "https://a.example"


def _client(network, urls):
    settings = parse_settings({
        "client": {"readmit_interval_sec": None},
        "networks": {"test": {"chain_id": 80002, "rpc_urls": urls}},
    })
    return LedgerClient.from_settings(settings, transport_factory=network.factory)


@pytest.mark.asyncio
async def test_probe_reports_pool_head_and_balances(network, ledger):
    network.add(A)
    ledger.balances[HOLDERS[0].lower()] = 5
    client = _client(network, [A])

    report = await ledger_probe.probe(client, None, [HOLDERS[0]])
    await client.close()

    assert report["network"] == "test"
    assert report["pool"]["admitted"] == [A]
    assert report["head"] == ledger.height
    assert report["balances"] == {HOLDERS[0]: 5}
    json.dumps(report, default=str)


@pytest.mark.asyncio
async def test_probe_with_empty_pool_stops_early(network):
    client = _client(network, [A])

    report = await ledger_probe.probe(client, None, [])
    await client.close()

    assert report["pool"]["admitted"] == []
    assert "head" not in report


def test_parse_args():
    args = ledger_probe.parse_args(["--config", "c.yaml", "--balance", "0x1", "--balance", "0x2"])

    assert args.config == "c.yaml"
    assert args.balance == ["0x1", "0x2"]
    assert args.network is None
