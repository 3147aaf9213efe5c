"""
Tests for paymaster_flows.verifier.
"""
from __future__ import annotations

import pytest

from paymaster_flows.encoding import SponsorshipMode
from paymaster_flows.errors import SponsorshipVerificationError
from paymaster_flows.submitter import TxReceipt
from paymaster_flows.verifier import (
    NATIVE_TOKEN,
    BalanceDelta,
    BalanceSnapshot,
    DeltaKind,
    SponsorshipVerifier,
    diff,
    take_snapshot,
)

PAYMASTER = "0x2222222222222222222222222222222222222222"
SENDER = "0x1111111111111111111111111111111111111111"
TOKEN = "0x3333333333333333333333333333333333333333"


def _receipt(gas_used: int = 1_000, price: int = 10) -> TxReceipt:
    return TxReceipt(
        tx_hash="0xabc", status=1, block_number=1, gas_used=gas_used,
        effective_gas_price=price, paymaster=PAYMASTER, mode=SponsorshipMode.GENERAL,
    )


def _native(address: str, amount: int) -> BalanceSnapshot:
    return BalanceSnapshot(address, NATIVE_TOKEN, amount)


class TestDiff:
    @pytest.mark.parametrize(
        "before,after,kind,amount",
        [
            (10, 10, DeltaKind.UNCHANGED, 0),
            (10, 15, DeltaKind.INCREASED, 5),
            (10, 3, DeltaKind.DECREASED, 7),
            (0, 0, DeltaKind.UNCHANGED, 0),
        ],
    )
    def test_direction_and_amount(self, before, after, kind, amount):
        delta = diff(_native(SENDER, before), _native(SENDER, after))
        assert delta == BalanceDelta(kind, amount)

    def test_signed(self):
        assert BalanceDelta(DeltaKind.DECREASED, 7).signed == -7
        assert BalanceDelta(DeltaKind.INCREASED, 7).signed == 7
        assert str(BalanceDelta(DeltaKind.UNCHANGED)) == "unchanged"
        assert str(BalanceDelta(DeltaKind.DECREASED, 7)) == "decreased by 7"

    def test_address_mismatch(self):
        with pytest.raises(ValueError, match="different addresses"):
            diff(_native(SENDER, 1), _native(PAYMASTER, 1))

    def test_token_mismatch(self):
        with pytest.raises(ValueError, match="different tokens"):
            diff(_native(SENDER, 1), BalanceSnapshot(SENDER, TOKEN, 1))

    def test_negative_snapshot(self):
        with pytest.raises(ValueError):
            _native(SENDER, -1)


class TestVerify:
    def test_sponsored(self):
        report = SponsorshipVerifier().verify(
            _receipt(),
            paymaster_before=_native(PAYMASTER, 50_000),
            paymaster_after=_native(PAYMASTER, 40_000),
            sender_before=_native(SENDER, 0),
            sender_after=_native(SENDER, 0),
            sender_token_before=BalanceSnapshot(SENDER, TOKEN, 3),
            sender_token_after=BalanceSnapshot(SENDER, TOKEN, 7),
        )

        assert report.paymaster_delta == BalanceDelta(DeltaKind.DECREASED, 10_000)
        assert report.sender_native_delta.kind is DeltaKind.UNCHANGED
        assert report.sender_token_delta.signed == 4
        assert report.paymaster_token_delta is None
        assert report.to_dict()["paymaster_delta"] == -10_000

    def test_paymaster_charged_wrong_amount(self):
        with pytest.raises(SponsorshipVerificationError) as exc_info:
            SponsorshipVerifier().verify(
                _receipt(),
                paymaster_before=_native(PAYMASTER, 50_000),
                paymaster_after=_native(PAYMASTER, 49_000),
                sender_before=_native(SENDER, 0),
                sender_after=_native(SENDER, 0),
            )
        assert exc_info.value.reason == "paymaster_delta_mismatch"
        assert exc_info.value.mode == "General"

    def test_tolerance(self):
        report = SponsorshipVerifier(tolerance_wei=5).verify(
            _receipt(),
            paymaster_before=_native(PAYMASTER, 50_000),
            paymaster_after=_native(PAYMASTER, 40_003),
            sender_before=_native(SENDER, 0),
            sender_after=_native(SENDER, 0),
        )
        assert report.paymaster_delta.amount == 9_997

    def test_sender_paid_gas(self):
        with pytest.raises(SponsorshipVerificationError) as exc_info:
            SponsorshipVerifier().verify(
                _receipt(),
                paymaster_before=_native(PAYMASTER, 50_000),
                paymaster_after=_native(PAYMASTER, 40_000),
                sender_before=_native(SENDER, 100),
                sender_after=_native(SENDER, 90),
            )
        assert exc_info.value.reason == "sender_paid_gas"

    def test_value_sent_is_not_gas(self):
        report = SponsorshipVerifier().verify(
            _receipt(),
            paymaster_before=_native(PAYMASTER, 50_000),
            paymaster_after=_native(PAYMASTER, 40_000),
            sender_before=_native(SENDER, 100),
            sender_after=_native(SENDER, 90),
            sender_native_value_wei=10,
        )
        assert report.sender_native_delta.signed == -10

    def test_negative_tolerance(self):
        with pytest.raises(ValueError):
            SponsorshipVerifier(tolerance_wei=-1)


class TestTakeSnapshot:
    @pytest.mark.asyncio
    async def test_native_and_token(self, rollup, signer):
        token = rollup.deploy_token()
        rollup.fund(signer.address, 42)
        rollup.mint_tokens(token, signer.address, 3)

        native = await take_snapshot(rollup, signer.address.lower())
        tokens = await take_snapshot(rollup, signer.address, token)

        assert native == BalanceSnapshot(signer.address, NATIVE_TOKEN, 42)
        assert tokens == BalanceSnapshot(signer.address, token, 3)
