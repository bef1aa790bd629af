"""config/runtime_schema.py

Defines the configuration schema for the ledger client.
Implements manual validation to avoid Pydantic dependency.

Layout of the YAML file:

    client:            # ClientConfig tunables
    default_network:   # key into networks
    networks:          # name -> NetworkConfig
    methods:           # name -> {arg_types, return_types} -> MethodDescriptor
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from eth_utils import is_address

from ingestion.rpc.abi import MethodDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientConfig:
    """
    Client tunables. Every field may be changed by a config reload; a changed
    default network additionally triggers a pool rebuild.
    """
    # Endpoint admission
    local_admission_timeout_ms: int = 3000
    remote_admission_timeout_ms: int = 8000
    request_timeout_ms: int = 8000
    max_admitted: Optional[int] = None
    failure_threshold: int = 3
    readmit_interval_sec: Optional[float] = 30.0

    # Reads
    max_attempts: int = 3
    retry_base_delay_ms: int = 400
    cache_max_entries: int = 500
    cache_ttls_ms: Dict[str, int] = field(default_factory=dict)

    # Batching
    batch_enabled: bool = True
    batch_timeout_ms: int = 10_000
    fallback_concurrency: int = 5

    # Pagination
    page_size: int = 15
    page_batch_ids: int = 6
    page_concurrency: int = 5

    # Writes
    tx_timeout_ms: int = 300_000
    tx_poll_interval_ms: int = 2000
    tx_progress_interval_ms: int = 10_000
    revert_reason_timeout_ms: int = 5000
    submission_retries: int = 1

    def __post_init__(self):
        """Validate constraints manually since we don't have Pydantic."""
        # Admission
        self._validate_range("local_admission_timeout_ms", self.local_admission_timeout_ms, 100, 60_000)
        self._validate_range("remote_admission_timeout_ms", self.remote_admission_timeout_ms, 100, 120_000)
        self._validate_range("request_timeout_ms", self.request_timeout_ms, 100, 120_000)
        if self.max_admitted is not None:
            self._validate_range("max_admitted", self.max_admitted, 1, None)
        self._validate_range("failure_threshold", self.failure_threshold, 1, 100)
        if self.readmit_interval_sec is not None:
            self._validate_range("readmit_interval_sec", self.readmit_interval_sec, 1, None)

        # Reads
        self._validate_range("max_attempts", self.max_attempts, 1, 20)
        self._validate_range("retry_base_delay_ms", self.retry_base_delay_ms, 0, 60_000)
        self._validate_range("cache_max_entries", self.cache_max_entries, 1, None)
        for method, ttl in self.cache_ttls_ms.items():
            self._validate_range(f"cache_ttls_ms.{method}", ttl, 0, None)

        # Batching
        self._validate_range("batch_timeout_ms", self.batch_timeout_ms, 100, 120_000)
        self._validate_range("fallback_concurrency", self.fallback_concurrency, 1, 100)

        # Pagination
        self._validate_range("page_size", self.page_size, 1, 1000)
        self._validate_range("page_batch_ids", self.page_batch_ids, 1, 500)
        self._validate_range("page_concurrency", self.page_concurrency, 1, 100)

        # Writes
        self._validate_range("tx_timeout_ms", self.tx_timeout_ms, 1000, None)
        self._validate_range("tx_poll_interval_ms", self.tx_poll_interval_ms, 50, 60_000)
        self._validate_range("tx_progress_interval_ms", self.tx_progress_interval_ms, 100, None)
        self._validate_range("revert_reason_timeout_ms", self.revert_reason_timeout_ms, 100, 60_000)
        self._validate_range("submission_retries", self.submission_retries, 0, 1)

    def _validate_range(self, name: str, value: Any, min_val: float, max_val: Optional[float] = None) -> None:
        if isinstance(value, bool):
            raise ValueError(f"{name} must be numeric, got {value}")
        try:
            val = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be numeric, got {value}")

        if val < min_val:
            raise ValueError(f"{name} {val} is below minimum {min_val}")
        if max_val is not None and val > max_val:
            raise ValueError(f"{name} {val} is above maximum {max_val}")


@dataclass(frozen=True)
class NetworkConfig:
    """One ledger network: identity, endpoints (primary first), facilities."""
    name: str
    chain_id: int
    rpc_urls: Tuple[str, ...]
    multicall_address: Optional[str] = None
    block_explorer: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ValueError(f"network {self.name}: chain_id must be a positive integer, got {self.chain_id!r}")
        if not self.rpc_urls:
            raise ValueError(f"network {self.name}: at least one rpc url is required")
        for url in self.rpc_urls:
            if not isinstance(url, str) or not url.startswith(("http://", "https://")):
                raise ValueError(f"network {self.name}: invalid rpc url {url!r}")
        if self.multicall_address is not None and not is_address(self.multicall_address):
            raise ValueError(f"network {self.name}: invalid multicall address {self.multicall_address!r}")


@dataclass(frozen=True)
class Settings:
    """Full configuration snapshot."""
    client: ClientConfig
    networks: Dict[str, NetworkConfig]
    default_network: str
    methods: Dict[str, MethodDescriptor] = field(default_factory=dict)

    def __post_init__(self):
        if self.default_network not in self.networks:
            raise ValueError(
                f"default_network {self.default_network!r} not in networks {sorted(self.networks)}"
            )

    @property
    def network(self) -> NetworkConfig:
        return self.networks[self.default_network]

    def method(self, name: str) -> MethodDescriptor:
        if name not in self.methods:
            raise KeyError(f"unknown method descriptor: {name}")
        return self.methods[name]


def _client_from_dict(data: Dict[str, Any]) -> ClientConfig:
    known = {f.name for f in dataclasses.fields(ClientConfig)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"[config] Ignoring unknown client settings: {', '.join(sorted(unknown))}")
    kwargs = {k: v for k, v in data.items() if k in known}
    if "cache_ttls_ms" in kwargs:
        kwargs["cache_ttls_ms"] = dict(kwargs["cache_ttls_ms"] or {})
    return ClientConfig(**kwargs)


def _network_from_dict(name: str, data: Dict[str, Any]) -> NetworkConfig:
    if not isinstance(data, dict):
        raise ValueError(f"network {name} must be a mapping")
    urls = data.get("rpc_urls") or []
    if isinstance(urls, str):
        urls = [urls]
    return NetworkConfig(
        name=name,
        chain_id=data.get("chain_id"),
        rpc_urls=tuple(urls),
        multicall_address=data.get("multicall_address"),
        block_explorer=data.get("block_explorer"),
    )


def parse_settings(raw_data: Any) -> Settings:
    """Validate an already parsed YAML document."""
    if not isinstance(raw_data, dict):
        raise ValueError("Config root must be a dictionary")

    client = _client_from_dict(raw_data.get("client") or {})

    networks_raw = raw_data.get("networks") or {}
    if not isinstance(networks_raw, dict) or not networks_raw:
        raise ValueError("networks must be a non-empty mapping")
    networks = {name: _network_from_dict(name, spec) for name, spec in networks_raw.items()}

    default_network = raw_data.get("default_network") or next(iter(networks))

    methods_raw = raw_data.get("methods") or {}
    if not isinstance(methods_raw, dict):
        raise ValueError("methods must be a mapping")
    methods = {name: MethodDescriptor.from_dict(name, spec or {}) for name, spec in methods_raw.items()}

    return Settings(client=client, networks=networks, default_network=default_network, methods=methods)


def load_settings(path: Union[str, Path]) -> Settings:
    """Read and validate a YAML config file."""
    with open(path, "r") as f:
        raw_data = yaml.safe_load(f)
    return parse_settings(raw_data)
