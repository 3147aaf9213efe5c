"""Balance snapshots and post-submission sponsorship checks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from eth_utils import to_checksum_address

from .errors import SponsorshipVerificationError
from .rpc_client import SponsorshipNetwork
from .submitter import TxReceipt

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "native"


@dataclass(frozen=True)
class BalanceSnapshot:
    address: str
    token: str
    amount: int

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("balance cannot be negative")


class DeltaKind(str, Enum):
    UNCHANGED = "unchanged"
    INCREASED = "increased"
    DECREASED = "decreased"


@dataclass(frozen=True)
class BalanceDelta:
    kind: DeltaKind
    amount: int = 0

    @property
    def signed(self) -> int:
        return -self.amount if self.kind is DeltaKind.DECREASED else self.amount

    def __str__(self) -> str:
        if self.kind is DeltaKind.UNCHANGED:
            return "unchanged"
        return f"{self.kind.value} by {self.amount}"


def diff(before: BalanceSnapshot, after: BalanceSnapshot) -> BalanceDelta:
    """Direction and magnitude of the change between two snapshots."""
    if before.address.lower() != after.address.lower():
        raise ValueError(f"Snapshots are for different addresses: {before.address} / {after.address}")
    if before.token.lower() != after.token.lower():
        raise ValueError(f"Snapshots are for different tokens: {before.token} / {after.token}")

    change = after.amount - before.amount
    if change == 0:
        return BalanceDelta(DeltaKind.UNCHANGED)
    if change > 0:
        return BalanceDelta(DeltaKind.INCREASED, change)
    return BalanceDelta(DeltaKind.DECREASED, -change)


async def take_snapshot(
    network: SponsorshipNetwork,
    address: str,
    token: Optional[str] = None,
) -> BalanceSnapshot:
    address = to_checksum_address(address)
    if token is None or token == NATIVE_TOKEN:
        return BalanceSnapshot(address, NATIVE_TOKEN, await network.get_balance(address))
    token = to_checksum_address(token)
    return BalanceSnapshot(address, token, await network.get_balance(address, token))


@dataclass(frozen=True)
class SponsorshipReport:
    """What a settled sponsored transaction did to the balances involved."""
    receipt: TxReceipt
    paymaster_delta: BalanceDelta
    sender_native_delta: BalanceDelta
    sender_token_delta: Optional[BalanceDelta] = None
    paymaster_token_delta: Optional[BalanceDelta] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt": self.receipt.to_dict(),
            "paymaster_delta": self.paymaster_delta.signed,
            "sender_native_delta": self.sender_native_delta.signed,
            "sender_token_delta": self.sender_token_delta.signed if self.sender_token_delta else None,
            "paymaster_token_delta": (
                self.paymaster_token_delta.signed if self.paymaster_token_delta else None
            ),
        }


class SponsorshipVerifier:
    """
    Checks that the paymaster, not the sender, paid for a transaction.

    The paymaster's native balance must drop by the receipt fee (within
    ``tolerance_wei``) and the sender's native balance must not drop by gas.
    ``sender_native_value_wei`` accounts for value the call itself sent.
    """

    def __init__(self, tolerance_wei: int = 0):
        if tolerance_wei < 0:
            raise ValueError("tolerance_wei must be >= 0")
        self.tolerance_wei = tolerance_wei

    def verify(
        self,
        receipt: TxReceipt,
        paymaster_before: BalanceSnapshot,
        paymaster_after: BalanceSnapshot,
        sender_before: BalanceSnapshot,
        sender_after: BalanceSnapshot,
        sender_token_before: Optional[BalanceSnapshot] = None,
        sender_token_after: Optional[BalanceSnapshot] = None,
        paymaster_token_before: Optional[BalanceSnapshot] = None,
        paymaster_token_after: Optional[BalanceSnapshot] = None,
        sender_native_value_wei: int = 0,
    ) -> SponsorshipReport:
        mode = receipt.mode.value if receipt.mode else None
        paymaster_delta = diff(paymaster_before, paymaster_after)
        sender_delta = diff(sender_before, sender_after)

        charged = -paymaster_delta.signed
        if abs(charged - receipt.fee_wei) > self.tolerance_wei:
            raise SponsorshipVerificationError(
                f"Paymaster balance {paymaster_delta} but the receipt fee is {receipt.fee_wei} wei",
                mode=mode,
                reason="paymaster_delta_mismatch",
                details={"tx_hash": receipt.tx_hash, "charged": charged, "fee_wei": receipt.fee_wei},
            )

        if sender_delta.signed < -sender_native_value_wei:
            raise SponsorshipVerificationError(
                f"Sender native balance {sender_delta}; the sender paid for gas",
                mode=mode,
                reason="sender_paid_gas",
                details={"tx_hash": receipt.tx_hash, "sender_delta": sender_delta.signed},
            )

        sender_token_delta = (
            diff(sender_token_before, sender_token_after)
            if sender_token_before is not None and sender_token_after is not None
            else None
        )
        paymaster_token_delta = (
            diff(paymaster_token_before, paymaster_token_after)
            if paymaster_token_before is not None and paymaster_token_after is not None
            else None
        )

        logger.info(
            f"Verified {receipt.tx_hash}: paymaster {paymaster_delta}, sender native {sender_delta}"
            + (f", sender token {sender_token_delta}" if sender_token_delta else "")
        )
        return SponsorshipReport(
            receipt=receipt,
            paymaster_delta=paymaster_delta,
            sender_native_delta=sender_delta,
            sender_token_delta=sender_token_delta,
            paymaster_token_delta=paymaster_token_delta,
        )
