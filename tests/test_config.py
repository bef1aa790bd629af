from __future__ import annotations

import asyncio
import dataclasses
import os
from pathlib import Path

import pytest
import yaml

from config.hot_reload import ConfigReloader, describe_changes, reload_bridge
from config.runtime_schema import ClientConfig, NetworkConfig, load_settings, parse_settings

SAMPLE = Path(__file__).resolve().parent.parent / "config" / "client.yaml"

BASE = {
    "client": {"max_attempts": 3},
    "default_network": "amoy",
    "networks": {
        "amoy": {"chain_id": 80002, "rpc_urls": ["https://a.example", "https://b.example"]},
        "local": {"chain_id": 31337, "rpc_urls": "http://127.0.0.1:8545"},
    },
    "methods": {"balanceOf": {"arg_types": ["address"], "return_types": ["uint256"]}},
}


def _write(path: Path, data, mtime: float) -> None:
    path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
    os.utime(path, (mtime, mtime))


def test_sample_config_loads():
    settings = load_settings(SAMPLE)

    assert settings.default_network == "amoy"
    assert settings.network.chain_id == 80002
    assert len(settings.network.rpc_urls) == 4
    assert settings.client.retry_base_delay_ms == 400
    assert settings.client.cache_ttls_ms["eth_blockNumber"] == 1500
    assert settings.method("balanceOf").signature == "balanceOf(address)"
    assert settings.networks["local"].block_explorer is None


def test_parse_settings_normalizes_urls_and_defaults():
    settings = parse_settings(BASE)

    assert settings.networks["local"].rpc_urls == ("http://127.0.0.1:8545",)
    assert settings.client.failure_threshold == 3
    with pytest.raises(KeyError):
        settings.method("transfer")


@pytest.mark.parametrize("overrides", [
    {"max_attempts": 0},
    {"submission_retries": 2},
    {"tx_timeout_ms": 10},
    {"fallback_concurrency": True},
    {"cache_ttls_ms": {"eth_call": -1}},
    {"retry_base_delay_ms": "fast"},
])
def test_client_config_rejects_out_of_range(overrides):
    with pytest.raises(ValueError):
        ClientConfig(**overrides)


@pytest.mark.parametrize("network", [
    {"chain_id": 0, "rpc_urls": ["https://a.example"]},
    {"chain_id": 1, "rpc_urls": []},
    {"chain_id": 1, "rpc_urls": ["wss://a.example"]},
    {"chain_id": 1, "rpc_urls": ["https://a.example"], "multicall_address": "0x1234"},
])
def test_invalid_networks_are_rejected(network):
    with pytest.raises(ValueError):
        parse_settings({"networks": {"bad": network}})


def test_unknown_default_network_is_rejected():
    with pytest.raises(ValueError):
        parse_settings({**BASE, "default_network": "mainnet"})


def test_unknown_client_keys_are_ignored(caplog):
    settings = parse_settings({**BASE, "client": {"max_attempts": 4, "colour": "blue"}})

    assert settings.client.max_attempts == 4
    assert "colour" in caplog.text


def test_describe_changes():
    old = parse_settings(BASE)
    new = parse_settings({**BASE, "client": {"max_attempts": 5}, "default_network": "local"})

    changes = describe_changes(old, new)

    assert "max_attempts 3 -> 5" in changes
    assert "default_network amoy -> local" in changes


def test_reloader_swaps_valid_config_and_keeps_previous_on_error(tmp_path):
    path = tmp_path / "client.yaml"
    _write(path, BASE, mtime=1_000_000)
    seen = []
    reloader = ConfigReloader(str(path), on_reload=lambda new, old: seen.append((new, old)))
    first = reloader.get_config()
    assert first.client.max_attempts == 3

    assert not reloader.check_file()

    _write(path, {**BASE, "client": {"max_attempts": 6}}, mtime=1_000_010)
    assert reloader.check_file()
    assert reloader.get_config().client.max_attempts == 6
    assert seen[0][1] is first

    _write(path, "networks: [not, a, mapping", mtime=1_000_020)
    assert not reloader.check_file()
    assert reloader.get_config().client.max_attempts == 6
    assert len(seen) == 1


def test_reloader_waits_for_missing_file(tmp_path):
    path = tmp_path / "client.yaml"
    reloader = ConfigReloader(str(path))

    assert reloader.get_config() is None
    assert not reloader.check_file()

    _write(path, BASE, mtime=1_000_000)
    assert reloader.check_file()
    assert reloader.get_config().default_network == "amoy"


class StubClient:
    def __init__(self):
        self.networks = None
        self.switched = []

    def update_networks(self, networks):
        self.networks = networks

    async def switch_network(self, name):
        self.switched.append(name)


@pytest.mark.asyncio
async def test_reload_bridge_switches_only_on_network_change():
    client = StubClient()
    on_reload = reload_bridge(client, asyncio.get_running_loop(), timeout_sec=5)
    old = parse_settings(BASE)

    same_network = parse_settings({**BASE, "client": {"max_attempts": 5}})
    await asyncio.to_thread(on_reload, same_network, old)
    assert client.switched == []

    moved = parse_settings({**BASE, "default_network": "local"})
    await asyncio.to_thread(on_reload, moved, old)
    assert client.switched == ["local"]
    assert set(client.networks) == {"amoy", "local"}

    changed_urls = {**BASE, "networks": {**BASE["networks"], "amoy": {"chain_id": 80002, "rpc_urls": ["https://c.example"]}}}
    await asyncio.to_thread(on_reload, parse_settings(changed_urls), old)
    assert client.switched == ["local", "amoy"]


def test_network_config_is_frozen():
    net = NetworkConfig(name="x", chain_id=1, rpc_urls=("https://a.example",))

    with pytest.raises(dataclasses.FrozenInstanceError):
        net.chain_id = 2
