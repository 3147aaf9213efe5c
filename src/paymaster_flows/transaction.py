"""EIP-712 (type 0x71) transaction envelope carrying paymaster params."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

import rlp
import rlp.exceptions
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import to_checksum_address
from web3 import Web3

from .config import DEFAULT_GAS_PER_PUBDATA_LIMIT
from .encoding import EncodedPaymasterParams, normalize_address
from .errors import GasPerPubdataTooLow

EIP712_TX_TYPE = 0x71

EIP712_DOMAIN_NAME = "zkSync"
EIP712_DOMAIN_VERSION = "2"

EIP712_TRANSACTION_TYPES: dict[str, list[dict[str, str]]] = {
    "Transaction": [
        {"name": "txType", "type": "uint256"},
        {"name": "from", "type": "uint256"},
        {"name": "to", "type": "uint256"},
        {"name": "gasLimit", "type": "uint256"},
        {"name": "gasPerPubdataByteLimit", "type": "uint256"},
        {"name": "maxFeePerGas", "type": "uint256"},
        {"name": "maxPriorityFeePerGas", "type": "uint256"},
        {"name": "paymaster", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "factoryDeps", "type": "bytes32[]"},
        {"name": "paymasterInput", "type": "bytes"},
    ]
}


def _hex_int(value: int) -> str:
    return hex(max(0, int(value)))


def _address_bytes(address: Optional[str]) -> bytes:
    if not address:
        return b""
    return bytes.fromhex(address[2:])


def _int_from_rlp(item: bytes) -> int:
    return int.from_bytes(item, "big") if item else 0


@dataclass
class SponsoredTransaction:
    """
    A standard call plus the zkSync customData fields.

    A freshly built transaction is a *skeleton*: ``gas_limit`` and
    ``max_fee_per_gas`` stay unset until a fee quote is applied, and
    ``nonce``/``chain_id`` until the submitter prepares it.
    """
    from_address: str
    to: str
    data: bytes = b""
    value: int = 0
    paymaster_params: Optional[EncodedPaymasterParams] = None
    gas_per_pubdata_limit: int = DEFAULT_GAS_PER_PUBDATA_LIMIT

    nonce: Optional[int] = None
    chain_id: Optional[int] = None
    gas_limit: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: int = 0

    factory_deps: list[bytes] = field(default_factory=list)
    custom_signature: bytes = b""

    def validate(self, gas_per_pubdata_floor: int = DEFAULT_GAS_PER_PUBDATA_LIMIT) -> None:
        """Local envelope checks; raises a ValidationInputError subclass."""
        self.from_address = normalize_address(self.from_address, "from")
        self.to = normalize_address(self.to, "to")
        if self.gas_per_pubdata_limit < gas_per_pubdata_floor:
            raise GasPerPubdataTooLow(self.gas_per_pubdata_limit, gas_per_pubdata_floor)

    @property
    def is_sponsored(self) -> bool:
        return self.paymaster_params is not None

    @property
    def max_cost_wei(self) -> int:
        """Most the paymaster can be charged for this transaction."""
        return int(self.gas_limit or 0) * int(self.max_fee_per_gas or 0)

    def with_fee(self, gas_limit: int, max_fee_per_gas: int) -> "SponsoredTransaction":
        return replace(self, gas_limit=gas_limit, max_fee_per_gas=max_fee_per_gas)

    def custom_data(self) -> dict[str, Any]:
        custom: dict[str, Any] = {"gasPerPubdata": self.gas_per_pubdata_limit}
        if self.paymaster_params is not None:
            custom["paymasterParams"] = self.paymaster_params.to_dict()
        return custom

    def to_rpc(self) -> dict[str, Any]:
        """Call object for eth_estimateGas / eth_call with eip712Meta."""
        meta: dict[str, Any] = {"gasPerPubdata": _hex_int(self.gas_per_pubdata_limit)}
        if self.factory_deps:
            meta["factoryDeps"] = [list(dep) for dep in self.factory_deps]
        if self.paymaster_params is not None:
            meta["paymasterParams"] = self.paymaster_params.to_rpc()

        call: dict[str, Any] = {
            "from": self.from_address,
            "to": self.to,
            "data": "0x" + self.data.hex(),
            "value": _hex_int(self.value),
            "type": _hex_int(EIP712_TX_TYPE),
            "eip712Meta": meta,
        }
        if self.gas_limit is not None:
            call["gas"] = _hex_int(self.gas_limit)
        if self.max_fee_per_gas is not None:
            call["maxFeePerGas"] = _hex_int(self.max_fee_per_gas)
            call["maxPriorityFeePerGas"] = _hex_int(self.max_priority_fee_per_gas)
        return call

    # -- EIP-712 signing --------------------------------------------------

    def _require_signable(self) -> None:
        missing = [
            name for name in ("nonce", "chain_id", "gas_limit", "max_fee_per_gas")
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(f"Transaction is not ready for signing, missing: {', '.join(missing)}")

    def eip712_message(self) -> dict[str, Any]:
        self._require_signable()
        paymaster = self.paymaster_params.paymaster if self.paymaster_params else None
        paymaster_input = self.paymaster_params.paymaster_input if self.paymaster_params else b""
        return {
            "txType": EIP712_TX_TYPE,
            "from": int(self.from_address, 16),
            "to": int(self.to, 16),
            "gasLimit": int(self.gas_limit),
            "gasPerPubdataByteLimit": int(self.gas_per_pubdata_limit),
            "maxFeePerGas": int(self.max_fee_per_gas),
            "maxPriorityFeePerGas": int(self.max_priority_fee_per_gas),
            "paymaster": int(paymaster, 16) if paymaster else 0,
            "nonce": int(self.nonce),
            "value": int(self.value),
            "data": self.data,
            "factoryDeps": [bytes(Web3.keccak(dep)) for dep in self.factory_deps],
            "paymasterInput": paymaster_input,
        }

    def signable_message(self) -> SignableMessage:
        self._require_signable()
        return encode_typed_data(
            domain_data={
                "name": EIP712_DOMAIN_NAME,
                "version": EIP712_DOMAIN_VERSION,
                "chainId": int(self.chain_id),
            },
            message_types=EIP712_TRANSACTION_TYPES,
            message_data=self.eip712_message(),
        )

    def signing_digest(self) -> bytes:
        message = self.signable_message()
        return bytes(Web3.keccak(b"\x19" + message.version + message.header + message.body))

    def tx_hash(self) -> str:
        """zkSync hash of a signed EIP-712 transaction."""
        if not self.custom_signature:
            raise ValueError("Transaction is not signed")
        digest = self.signing_digest()
        return "0x" + bytes(Web3.keccak(digest + bytes(Web3.keccak(self.custom_signature)))).hex()

    # -- Wire format ------------------------------------------------------

    def serialize(self) -> str:
        """``0x71 || rlp(fields)``, hex encoded."""
        self._require_signable()
        if self.paymaster_params is not None:
            paymaster_field: list[Any] = [
                _address_bytes(self.paymaster_params.paymaster),
                self.paymaster_params.paymaster_input,
            ]
        else:
            paymaster_field = []

        fields = [
            int(self.nonce),
            int(self.max_priority_fee_per_gas),
            int(self.max_fee_per_gas),
            int(self.gas_limit),
            _address_bytes(self.to),
            int(self.value),
            self.data,
            # Unsigned-legacy slots (v, r, s) carry chainId, "", "".
            int(self.chain_id),
            b"",
            b"",
            int(self.chain_id),
            _address_bytes(self.from_address),
            int(self.gas_per_pubdata_limit),
            list(self.factory_deps),
            self.custom_signature,
            paymaster_field,
        ]
        return "0x" + (bytes([EIP712_TX_TYPE]) + rlp.encode(fields)).hex()

    @classmethod
    def parse(cls, raw: str | bytes) -> "SponsoredTransaction":
        payload = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw) if isinstance(raw, str) else raw
        if not payload or payload[0] != EIP712_TX_TYPE:
            raise ValueError("Not an EIP-712 (0x71) transaction")

        try:
            fields = rlp.decode(payload[1:])
        except rlp.exceptions.DecodingError as e:
            raise ValueError(f"Malformed EIP-712 transaction: {e}") from e
        if len(fields) != 16:
            raise ValueError(f"Malformed EIP-712 transaction: expected 16 fields, got {len(fields)}")

        paymaster_field = fields[15]
        paymaster_params = None
        if paymaster_field:
            paymaster_params = EncodedPaymasterParams(
                paymaster=to_checksum_address(paymaster_field[0]),
                paymaster_input=bytes(paymaster_field[1]),
            )

        return cls(
            nonce=_int_from_rlp(fields[0]),
            max_priority_fee_per_gas=_int_from_rlp(fields[1]),
            max_fee_per_gas=_int_from_rlp(fields[2]),
            gas_limit=_int_from_rlp(fields[3]),
            to=to_checksum_address(fields[4]),
            value=_int_from_rlp(fields[5]),
            data=bytes(fields[6]),
            chain_id=_int_from_rlp(fields[10]),
            from_address=to_checksum_address(fields[11]),
            gas_per_pubdata_limit=_int_from_rlp(fields[12]),
            factory_deps=[bytes(dep) for dep in fields[13]],
            custom_signature=bytes(fields[14]),
            paymaster_params=paymaster_params,
        )
