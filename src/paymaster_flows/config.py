"""
Configuration for paymaster-flows.

Provides configuration for:
- RPC endpoints with fallback support
- Chain ID validation
- Finality timeouts and polling
- Fee estimation parameters
- Logging

Configuration objects are built once and passed into each flow explicitly;
nothing here is cached at module level.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Lowest gasPerPubdataLimit the sequencer accepts for L2 transactions.
DEFAULT_GAS_PER_PUBDATA_LIMIT = 50_000

DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 120.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0


@dataclass
class RPCEndpointConfig:
    """Configuration for a single RPC endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = 30.0
    max_consecutive_failures: int = 3


@dataclass
class NetworkConfig:
    """Configuration for a zkSync-compatible network."""
    chain_id: int
    name: str
    display_name: str

    rpc_endpoints: List[RPCEndpointConfig] = field(default_factory=list)

    # Finality
    confirmations_required: int = 1
    confirmation_timeout_seconds: float = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS

    # Fee model
    gas_per_pubdata_floor: int = DEFAULT_GAS_PER_PUBDATA_LIMIT

    is_testnet: bool = True
    native_token: str = "ETH"
    explorer_url: str = ""

    def get_primary_rpc_url(self) -> str:
        """Get the primary (highest priority) RPC URL."""
        if not self.rpc_endpoints:
            raise ValueError(f"No RPC endpoints configured for {self.name}")
        sorted_endpoints = sorted(self.rpc_endpoints, key=lambda e: e.priority)
        return sorted_endpoints[0].url

    def get_all_rpc_urls(self) -> List[str]:
        """Get all RPC URLs in priority order."""
        sorted_endpoints = sorted(self.rpc_endpoints, key=lambda e: e.priority)
        return [e.url for e in sorted_endpoints]


@dataclass
class FeeEstimationConfig:
    """Configuration for fee estimation."""
    # Percentage added on top of eth_estimateGas. The sample flows use none.
    gas_limit_buffer_percent: int = 0

    # Flows that cannot be estimated (unbounded loops) pass a fixed limit.
    default_fixed_gas_limit: int = 100_000_000

    # Quotes above this are refused before submission. None = no cap.
    max_fee_wei: Optional[int] = None


@dataclass
class SubmissionConfig:
    """Configuration for sponsored transaction submission."""
    gas_per_pubdata_limit: int = DEFAULT_GAS_PER_PUBDATA_LIMIT
    max_priority_fee_per_gas: int = 0

    # Overrides NetworkConfig values when set
    confirmation_timeout_seconds: Optional[float] = None
    poll_interval_seconds: Optional[float] = None


@dataclass
class LoggingConfig:
    """Configuration for sponsorship operation logging."""
    operation_level: str = "INFO"
    rpc_call_level: str = "DEBUG"
    error_level: str = "ERROR"

    mask_addresses: bool = False
    log_fee_quotes: bool = True

    audit_log_enabled: bool = False
    audit_log_path: Optional[str] = None  # None = use default logger


@dataclass
class PaymasterFlowsConfig:
    """
    Master configuration.

    Supports loading from environment variables with prefix PAYMASTER_FLOWS_.
    """
    networks: Dict[str, NetworkConfig] = field(default_factory=dict)

    fees: FeeEstimationConfig = field(default_factory=FeeEstimationConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    default_network: str = "zksync_local"
    address_book_path: str = ".env"

    def get_network_config(self, network: Optional[str] = None) -> NetworkConfig:
        """Get configuration for a specific network (default network if None)."""
        name = network or self.default_network
        if name not in self.networks:
            raise ValueError(f"Unknown network: {name}")
        return self.networks[name]

    def is_network_supported(self, network: str) -> bool:
        return network in self.networks


def _get_env(key: str, default: Any = None, prefix: str = "PAYMASTER_FLOWS_") -> Any:
    """Get environment variable with prefix."""
    return os.getenv(f"{prefix}{key}", default)


def _get_env_float(key: str, default: Optional[float]) -> Optional[float]:
    raw = _get_env(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric PAYMASTER_FLOWS_{key}={raw!r}")
        return default


def _build_network_config(
    chain_id: int,
    name: str,
    display_name: str,
    default_rpc: str,
    fallback_rpcs: List[str],
    explorer_url: str = "",
    is_testnet: bool = True,
) -> NetworkConfig:
    """Build a NetworkConfig with environment variable overrides."""
    env_key = f"{name.upper()}_RPC_URL"
    custom_rpc = os.getenv(env_key) or os.getenv(f"PAYMASTER_FLOWS_{env_key}")

    primary_url = custom_rpc or default_rpc
    endpoints = [RPCEndpointConfig(url=primary_url, priority=0)]
    for i, url in enumerate(fallback_rpcs):
        if url != primary_url:
            endpoints.append(RPCEndpointConfig(url=url, priority=i + 1))

    return NetworkConfig(
        chain_id=chain_id,
        name=name,
        display_name=display_name,
        rpc_endpoints=endpoints,
        explorer_url=explorer_url,
        is_testnet=is_testnet,
    )


def build_default_config() -> PaymasterFlowsConfig:
    """Build default configuration with all supported networks."""
    networks = {}

    # Dockerised local-setup node (hardhat "zkSyncLocalTestnet")
    networks["zksync_local"] = _build_network_config(
        chain_id=270,
        name="zksync_local",
        display_name="zkSync Local Testnet",
        default_rpc="http://localhost:3050",
        fallback_rpcs=[],
    )

    networks["zksync_in_memory"] = _build_network_config(
        chain_id=260,
        name="zksync_in_memory",
        display_name="zkSync In-Memory Node",
        default_rpc="http://127.0.0.1:8011",
        fallback_rpcs=[],
    )

    networks["zksync_sepolia"] = _build_network_config(
        chain_id=300,
        name="zksync_sepolia",
        display_name="zkSync Sepolia",
        default_rpc="https://sepolia.era.zksync.dev",
        fallback_rpcs=[],
        explorer_url="https://sepolia.explorer.zksync.io",
    )

    networks["zksync_era"] = _build_network_config(
        chain_id=324,
        name="zksync_era",
        display_name="zkSync Era",
        default_rpc="https://mainnet.era.zksync.io",
        fallback_rpcs=[],
        explorer_url="https://explorer.zksync.io",
        is_testnet=False,
    )

    submission = SubmissionConfig(
        confirmation_timeout_seconds=_get_env_float("CONFIRMATION_TIMEOUT", None),
        poll_interval_seconds=_get_env_float("POLL_INTERVAL", None),
    )

    log_config = LoggingConfig(
        operation_level=_get_env("LOG_LEVEL", "INFO"),
        audit_log_path=_get_env("AUDIT_LOG_PATH"),
        audit_log_enabled=bool(_get_env("AUDIT_LOG_PATH")),
    )

    return PaymasterFlowsConfig(
        networks=networks,
        submission=submission,
        logging=log_config,
        default_network=_get_env("NETWORK", "zksync_local"),
        address_book_path=_get_env("ADDRESS_BOOK", ".env"),
    )

