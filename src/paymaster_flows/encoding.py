"""Paymaster input encoding for the zkSync paymaster flows.

A paymaster input is the 4-byte selector of the flow function followed by the
ABI encoding of its arguments:

- ``general(bytes innerInput)``
- ``approvalBased(address token, uint256 minimalAllowance, bytes innerInput)``

The paymaster contract decodes the same layout during validation, so the
encoding here must stay byte-for-byte stable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import is_address, to_checksum_address
from web3 import Web3

from .errors import InvalidAddress, InvalidAllowance, UnsupportedPaymasterFlow


class SponsorshipMode(str, Enum):
    """Paymaster flows understood by the network."""
    GENERAL = "General"
    APPROVAL_BASED = "ApprovalBased"


GENERAL_FLOW_SIGNATURE = "general(bytes)"
APPROVAL_BASED_FLOW_SIGNATURE = "approvalBased(address,uint256,bytes)"

GENERAL_FLOW_SELECTOR = bytes(Web3.keccak(text=GENERAL_FLOW_SIGNATURE)[:4])
APPROVAL_BASED_FLOW_SELECTOR = bytes(Web3.keccak(text=APPROVAL_BASED_FLOW_SIGNATURE)[:4])

_FLOW_ABI_TYPES: dict[SponsorshipMode, list[str]] = {
    SponsorshipMode.GENERAL: ["bytes"],
    SponsorshipMode.APPROVAL_BASED: ["address", "uint256", "bytes"],
}

_SELECTOR_TO_MODE: dict[bytes, SponsorshipMode] = {
    GENERAL_FLOW_SELECTOR: SponsorshipMode.GENERAL,
    APPROVAL_BASED_FLOW_SELECTOR: SponsorshipMode.APPROVAL_BASED,
}


def normalize_address(value: Any, field_name: str) -> str:
    """Return the checksum form of ``value`` or raise InvalidAddress."""
    if isinstance(value, bytes) and len(value) == 20:
        value = "0x" + value.hex()
    if not isinstance(value, str) or not is_address(value):
        raise InvalidAddress(field_name, value)
    return to_checksum_address(value)


@dataclass(frozen=True)
class GeneralParams:
    inner_input: bytes = b""


@dataclass(frozen=True)
class ApprovalBasedParams:
    token: str
    minimal_allowance: int
    inner_input: bytes = b""


ModeParams = Union[GeneralParams, ApprovalBasedParams]


@dataclass(frozen=True)
class SponsorshipRequest:
    """What the caller wants sponsored, before encoding."""
    paymaster_address: str
    mode: SponsorshipMode
    params: ModeParams = field(default_factory=GeneralParams)

    @classmethod
    def general(cls, paymaster_address: str, inner_input: bytes = b"") -> "SponsorshipRequest":
        return cls(paymaster_address, SponsorshipMode.GENERAL, GeneralParams(inner_input))

    @classmethod
    def approval_based(
        cls,
        paymaster_address: str,
        token: str,
        minimal_allowance: int,
        inner_input: bytes = b"",
    ) -> "SponsorshipRequest":
        return cls(
            paymaster_address,
            SponsorshipMode.APPROVAL_BASED,
            ApprovalBasedParams(token, minimal_allowance, inner_input),
        )


@dataclass(frozen=True)
class EncodedPaymasterParams:
    """Canonical ``paymasterParams`` carried in a transaction's customData."""
    paymaster: str
    paymaster_input: bytes

    @property
    def selector(self) -> bytes:
        return self.paymaster_input[:4]

    @property
    def mode(self) -> SponsorshipMode:
        return decode_paymaster_input(self.paymaster_input)[0]

    def to_rpc(self) -> dict[str, Any]:
        """Shape expected inside ``eip712Meta`` by zkSync nodes."""
        return {
            "paymaster": self.paymaster,
            "paymasterInput": list(self.paymaster_input),
        }

    def to_dict(self) -> dict[str, str]:
        return {
            "paymaster": self.paymaster,
            "paymasterInput": "0x" + self.paymaster_input.hex(),
        }


def _check_inner_input(inner_input: Any) -> bytes:
    if isinstance(inner_input, (bytearray, memoryview)):
        return bytes(inner_input)
    if not isinstance(inner_input, bytes):
        raise TypeError(f"inner_input must be bytes, got {type(inner_input).__name__}")
    return inner_input


def encode(request: SponsorshipRequest) -> EncodedPaymasterParams:
    """Encode a sponsorship request into paymaster params. Pure."""
    paymaster = normalize_address(request.paymaster_address, "paymaster_address")
    params = request.params

    if request.mode is SponsorshipMode.GENERAL:
        if not isinstance(params, GeneralParams):
            raise TypeError("General mode takes GeneralParams")
        inner = _check_inner_input(params.inner_input)
        body = abi_encode(_FLOW_ABI_TYPES[SponsorshipMode.GENERAL], [inner])
        return EncodedPaymasterParams(paymaster, GENERAL_FLOW_SELECTOR + body)

    if request.mode is SponsorshipMode.APPROVAL_BASED:
        if not isinstance(params, ApprovalBasedParams):
            raise TypeError("ApprovalBased mode takes ApprovalBasedParams")
        token = normalize_address(params.token, "token")
        allowance = params.minimal_allowance
        # bool is an int subclass; True is not an allowance
        if isinstance(allowance, bool) or not isinstance(allowance, int):
            raise InvalidAllowance(allowance)
        if allowance < 1 or allowance >= 2**256:
            raise InvalidAllowance(allowance)
        inner = _check_inner_input(params.inner_input)
        body = abi_encode(
            _FLOW_ABI_TYPES[SponsorshipMode.APPROVAL_BASED], [token, allowance, inner]
        )
        return EncodedPaymasterParams(paymaster, APPROVAL_BASED_FLOW_SELECTOR + body)

    raise UnsupportedPaymasterFlow(f"Unsupported sponsorship mode: {request.mode!r}")


def get_paymaster_params(
    paymaster_address: str,
    mode: SponsorshipMode | str,
    *,
    token: str | None = None,
    minimal_allowance: int | None = None,
    inner_input: bytes = b"",
) -> EncodedPaymasterParams:
    """Keyword-style helper mirroring the SDK's getPaymasterParams."""
    mode = SponsorshipMode(mode)
    if mode is SponsorshipMode.GENERAL:
        return encode(SponsorshipRequest.general(paymaster_address, inner_input))
    if token is None:
        raise InvalidAddress("token", token)
    if minimal_allowance is None:
        raise InvalidAllowance(minimal_allowance)
    return encode(
        SponsorshipRequest.approval_based(paymaster_address, token, minimal_allowance, inner_input)
    )


def decode_paymaster_input(data: bytes) -> tuple[SponsorshipMode, ModeParams]:
    """Recover the flow and its parameters from a paymaster input."""
    if len(data) < 4:
        raise UnsupportedPaymasterFlow("paymasterInput shorter than a selector")

    mode = _SELECTOR_TO_MODE.get(bytes(data[:4]))
    if mode is None:
        raise UnsupportedPaymasterFlow(f"Unknown paymaster flow selector 0x{bytes(data[:4]).hex()}")

    try:
        values = abi_decode(_FLOW_ABI_TYPES[mode], bytes(data[4:]))
    except DecodingError as e:
        raise UnsupportedPaymasterFlow(f"Malformed {mode.value} paymaster input: {e}") from e
    if mode is SponsorshipMode.GENERAL:
        return mode, GeneralParams(inner_input=bytes(values[0]))
    token, allowance, inner = values
    return mode, ApprovalBasedParams(
        token=to_checksum_address(token),
        minimal_allowance=int(allowance),
        inner_input=bytes(inner),
    )
