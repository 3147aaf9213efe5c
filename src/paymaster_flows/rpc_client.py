"""
Network access for sponsored transactions.

Features:
- ``SponsorshipNetwork`` port shared by the live client and the local rollup
- Ordered zkSync endpoints, falling over on transport errors
- Chain ID checked once before the first request
- ERC-20 balance / allowance reads via eth_call
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from eth_abi import decode, encode
from web3 import Web3

from .config import NetworkConfig, RPCEndpointConfig
from .transaction import SponsoredTransaction

logger = logging.getLogger(__name__)

ERC20_BALANCE_OF_SELECTOR = bytes(Web3.keccak(text="balanceOf(address)")[:4])
ERC20_ALLOWANCE_SELECTOR = bytes(Web3.keccak(text="allowance(address,address)")[:4])


class SponsorshipNetwork(ABC):
    """Everything the sponsorship core needs from a network."""

    name: str = "unknown"

    @abstractmethod
    async def get_chain_id(self) -> int: ...

    @abstractmethod
    async def get_gas_price(self) -> int: ...

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        """Native balance in wei, or ``balanceOf`` on ``token`` when given."""

    @abstractmethod
    async def get_allowance(self, token: str, owner: str, spender: str) -> int: ...

    @abstractmethod
    async def get_nonce(self, address: str) -> int: ...

    @abstractmethod
    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        """Read-only call; returns the hex encoded return data."""

    @abstractmethod
    async def estimate_gas(self, tx: SponsoredTransaction) -> int:
        """Simulate ``tx`` including paymaster validation. Raises RPCError on revert."""

    @abstractmethod
    async def send_raw_transaction(self, raw_tx: str) -> str: ...

    @abstractmethod
    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]: ...

    async def close(self) -> None:
        return None


class ChainIDMismatchError(Exception):
    """The node reports a different chain than the configured network."""

    def __init__(self, network: str, expected: int, received: int):
        self.network = network
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch for {network}: expected {expected}, got {received}. "
            f"Refusing to sign for the wrong network."
        )


class RPCError(Exception):
    """Error object returned by the node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class AllEndpointsFailedError(Exception):
    """Every configured endpoint failed at the transport level."""

    def __init__(self, network: str, errors: List[Tuple[str, str]]):
        self.network = network
        self.errors = errors
        error_summary = "; ".join([f"{url}: {err}" for url, err in errors[:3]])
        super().__init__(f"All RPC endpoints failed for {network}. Errors: {error_summary}")


@dataclass
class EndpointHealth:
    """Failure and latency counters for one endpoint."""
    url: str
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    last_failure: Optional[datetime] = None
    last_error: Optional[str] = None
    avg_latency_ms: float = 0.0
    max_consecutive_failures: int = 3

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_failures < self.max_consecutive_failures

    def record_success(self, latency_ms: float) -> None:
        self.consecutive_failures = 0
        self.total_requests += 1
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.9 * self.avg_latency_ms + 0.1 * latency_ms

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        self.total_failures += 1
        self.last_failure = datetime.now(timezone.utc)
        self.last_error = error

    def priority_score(self, base_priority: int) -> float:
        """Lower score = tried first."""
        score = float(base_priority * 100) + self.consecutive_failures * 100
        if not self.is_healthy:
            score += 10000
        return score + self.avg_latency_ms / 10.0


class ZkSyncRPCClient(SponsorshipNetwork):
    """
    JSON-RPC client for zkSync-compatible nodes.

    Transport failures fail over to the next endpoint. Errors returned by the
    node itself (reverts, validation failures) are raised as RPCError without
    trying other endpoints, since every endpoint would give the same answer.
    """

    def __init__(
        self,
        config: NetworkConfig,
        validate_chain_id_on_connect: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = config.name
        self._config = config
        self._validate_chain_id = validate_chain_id_on_connect
        self._http_client = http_client
        self._request_id = 0
        self._connected = False
        self._verified_chain_id: Optional[int] = None

        self._endpoints: List[Tuple[RPCEndpointConfig, EndpointHealth]] = [
            (endpoint, EndpointHealth(url=endpoint.url,
                                      max_consecutive_failures=endpoint.max_consecutive_failures))
            for endpoint in config.rpc_endpoints
        ]
        if not self._endpoints:
            raise ValueError(f"No RPC endpoints configured for network {config.name}")

        logger.info(f"Initialized RPC client for {config.name} with {len(self._endpoints)} endpoints")

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.rpc_endpoints[0].timeout_seconds, connect=10.0),
            )
        return self._http_client

    async def connect(self) -> None:
        """Validate the chain ID once before the first real call."""
        if self._connected:
            return
        if self._validate_chain_id:
            chain_id = int(await self._call_internal("eth_chainId", [], skip_chain_validation=True), 16)
            if chain_id != self._config.chain_id:
                raise ChainIDMismatchError(self.name, self._config.chain_id, chain_id)
            self._verified_chain_id = chain_id
            logger.info(f"Chain ID validated for {self.name}: {chain_id}")
        self._connected = True

    def _ordered_endpoints(self) -> List[Tuple[RPCEndpointConfig, EndpointHealth]]:
        return sorted(self._endpoints, key=lambda pair: pair[1].priority_score(pair[0].priority))

    async def _call_internal(
        self,
        method: str,
        params: List[Any],
        skip_chain_validation: bool = False,
    ) -> Any:
        if not skip_chain_validation and self._validate_chain_id and not self._connected:
            await self.connect()

        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        errors: List[Tuple[str, str]] = []

        for endpoint, health in self._ordered_endpoints():
            start_time = time.time()
            try:
                response = await self._get_client().post(
                    endpoint.url,
                    json=payload,
                    timeout=endpoint.timeout_seconds,
                )
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                health.record_failure(str(e))
                errors.append((endpoint.url, str(e)))
                logger.warning(f"RPC call {method} to {endpoint.url} failed: {e}")
                continue

            latency_ms = (time.time() - start_time) * 1000
            health.record_success(latency_ms)

            if body.get("error"):
                error = body["error"]
                raise RPCError(
                    message=str(error.get("message", error)),
                    code=error.get("code"),
                    data=error.get("data"),
                )

            logger.debug(f"RPC call {method} to {endpoint.url} succeeded in {latency_ms:.0f}ms")
            return body.get("result")

        raise AllEndpointsFailedError(network=self.name, errors=errors)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return await self._call_internal(method, params or [])

    async def get_chain_id(self) -> int:
        if self._verified_chain_id is not None:
            return self._verified_chain_id
        self._verified_chain_id = int(await self.call("eth_chainId"), 16)
        return self._verified_chain_id

    async def get_gas_price(self) -> int:
        return int(await self.call("eth_gasPrice"), 16)

    async def get_block_number(self) -> int:
        return int(await self.call("eth_blockNumber"), 16)

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        if token is None:
            return int(await self.call("eth_getBalance", [address, "latest"]), 16)
        data = ERC20_BALANCE_OF_SELECTOR + encode(["address"], [address])
        result = await self.eth_call({"to": token, "data": "0x" + data.hex()})
        return decode(["uint256"], bytes.fromhex(result[2:]))[0]

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        data = ERC20_ALLOWANCE_SELECTOR + encode(["address", "address"], [owner, spender])
        result = await self.eth_call({"to": token, "data": "0x" + data.hex()})
        return decode(["uint256"], bytes.fromhex(result[2:]))[0]

    async def get_nonce(self, address: str) -> int:
        return int(await self.call("eth_getTransactionCount", [address, "latest"]), 16)

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        return await self.call("eth_call", [tx, block])

    async def estimate_gas(self, tx: SponsoredTransaction) -> int:
        return int(await self.call("eth_estimateGas", [tx.to_rpc()]), 16)

    async def send_raw_transaction(self, raw_tx: str) -> str:
        if not raw_tx.startswith("0x"):
            raw_tx = "0x" + raw_tx
        return await self.call("eth_sendRawTransaction", [raw_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": endpoint.url,
                "priority": endpoint.priority,
                "healthy": health.is_healthy,
                "consecutive_failures": health.consecutive_failures,
                "total_requests": health.total_requests,
                "total_failures": health.total_failures,
                "avg_latency_ms": round(health.avg_latency_ms, 2),
                "last_error": health.last_error,
            }
            for endpoint, health in self._endpoints
        ]

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "ZkSyncRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
