#!/usr/bin/env python3
"""scripts/ledger_probe.py

Operator probe: build the endpoint pool for a configured network and print
its status, the head height and client metrics as JSON on stdout.

Usage:
    python scripts/ledger_probe.py --config config/client.yaml [--network amoy] [--metrics-csv out.csv]

Options:
    --config: Path to client config YAML
    --network: Network name [default: default_network from config]
    --balance: Address whose native balance is also queried (repeatable)
    --metrics-csv: Append flattened client metrics to this CSV

Exit codes:
    - 0: At least one endpoint admitted
    - 1: Pool is empty (no viable endpoint)
    - 2: Config error
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.runtime_schema import load_settings
from ingestion.rpc.client import LedgerClient
from ingestion.rpc.errors import ClassifiedError
from monitoring.exporters import export_run_metrics


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe ledger RPC endpoints and report pool status")
    parser.add_argument("--config", type=str, required=True, help="Path to client config YAML")
    parser.add_argument("--network", type=str, default=None, help="Network name [default: from config]")
    parser.add_argument("--balance", action="append", default=[], help="Address to query balance for")
    parser.add_argument("--metrics-csv", type=str, default=None, help="Append client metrics to CSV")
    parser.add_argument("--verbose", action="store_true", help="Debug logging on stderr")
    return parser.parse_args(argv)


async def probe(client: LedgerClient, network: Optional[str], balances: List[str]) -> Dict[str, Any]:
    await client.start(network)
    report: Dict[str, Any] = {"network": client.network, "pool": client.pool.status()}
    if not len(client.pool):
        return report

    try:
        report["head"] = await client.block_number()
    except ClassifiedError as e:
        report["head_error"] = e.to_dict()

    if balances:
        report["balances"] = {}
        for address in balances:
            try:
                report["balances"][address] = await client.get_balance(address)
            except ClassifiedError as e:
                report["balances"][address] = e.to_dict()

    report["metrics"] = client.get_metrics()
    return report


async def run(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(args.config)
    except (OSError, ValueError, TypeError) as e:
        print(f"[ledger_probe] Config error: {e}", file=sys.stderr)
        return 2

    client = LedgerClient.from_settings(settings)
    try:
        report = await probe(client, args.network, args.balance)
    except KeyError as e:
        print(f"[ledger_probe] {e}", file=sys.stderr)
        return 2
    finally:
        await client.close()

    print(json.dumps(report, indent=2, default=str))

    if args.metrics_csv and "metrics" in report:
        export_run_metrics(report["metrics"], args.metrics_csv)

    return 0 if report["pool"]["admitted"] else 1


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
