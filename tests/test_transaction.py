"""
Tests for the EIP-712 transaction envelope and signer.
"""
from __future__ import annotations

import pytest

from paymaster_flows.config import DEFAULT_GAS_PER_PUBDATA_LIMIT
from paymaster_flows.encoding import SponsorshipRequest, encode
from paymaster_flows.errors import GasPerPubdataTooLow, InvalidAddress
from paymaster_flows.signer import LocalAccountSigner, recover_sender
from paymaster_flows.transaction import EIP712_TX_TYPE, SponsoredTransaction

PAYMASTER = "0x1234567890123456789012345678901234567890"
TARGET = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def _ready_tx(sender: str, **overrides) -> SponsoredTransaction:
    fields = dict(
        from_address=sender,
        to=TARGET,
        data=b"\xa9\x05\x9c\xbb",
        paymaster_params=encode(SponsorshipRequest.general(PAYMASTER)),
        nonce=3,
        chain_id=270,
        gas_limit=500_000,
        max_fee_per_gas=250_000_000,
    )
    fields.update(overrides)
    return SponsoredTransaction(**fields)


class TestValidate:
    def test_default_gas_per_pubdata(self, signer):
        tx = SponsoredTransaction(from_address=signer.address, to=TARGET)
        assert tx.gas_per_pubdata_limit == DEFAULT_GAS_PER_PUBDATA_LIMIT == 50_000
        tx.validate()

    def test_gas_per_pubdata_below_floor(self, signer):
        tx = SponsoredTransaction(from_address=signer.address, to=TARGET, gas_per_pubdata_limit=49_999)
        with pytest.raises(GasPerPubdataTooLow) as exc_info:
            tx.validate()
        assert exc_info.value.floor == 50_000

    def test_bad_target(self, signer):
        tx = SponsoredTransaction(from_address=signer.address, to="0x12")
        with pytest.raises(InvalidAddress):
            tx.validate()

    def test_addresses_normalised(self, signer):
        tx = SponsoredTransaction(from_address=signer.address.lower(), to=TARGET.lower())
        tx.validate()
        assert tx.to == TARGET
        assert tx.from_address == signer.address


class TestCustomData:
    def test_custom_data(self, signer):
        tx = _ready_tx(signer.address)
        custom = tx.custom_data()
        assert custom["gasPerPubdata"] == 50_000
        assert custom["paymasterParams"]["paymaster"] == PAYMASTER
        assert custom["paymasterParams"]["paymasterInput"].startswith("0x8c5a3445")

    def test_to_rpc_skeleton_has_no_gas_fields(self, signer):
        tx = SponsoredTransaction(
            from_address=signer.address, to=TARGET,
            paymaster_params=encode(SponsorshipRequest.general(PAYMASTER)),
        )
        call = tx.to_rpc()
        assert call["type"] == hex(EIP712_TX_TYPE)
        assert "gas" not in call
        assert call["eip712Meta"]["gasPerPubdata"] == hex(50_000)
        assert call["eip712Meta"]["paymasterParams"]["paymasterInput"][:4] == [0x8C, 0x5A, 0x34, 0x45]

    def test_max_cost(self, signer):
        assert _ready_tx(signer.address).max_cost_wei == 500_000 * 250_000_000
        assert SponsoredTransaction(from_address=signer.address, to=TARGET).max_cost_wei == 0


class TestSigning:
    def test_sign_and_recover(self, signer):
        signed = signer.sign_transaction(_ready_tx(signer.address))
        assert len(signed.custom_signature) == 65
        assert recover_sender(signed) == signer.address

    def test_signature_binds_paymaster_params(self, signer):
        signed = signer.sign_transaction(_ready_tx(signer.address))
        tampered = _ready_tx(
            signer.address,
            paymaster_params=encode(SponsorshipRequest.general(TARGET)),
            custom_signature=signed.custom_signature,
        )
        assert recover_sender(tampered) != signer.address

    def test_cannot_sign_for_another_sender(self, signer, other_signer):
        with pytest.raises(ValueError):
            signer.sign_transaction(_ready_tx(other_signer.address))

    def test_skeleton_not_signable(self, signer):
        with pytest.raises(ValueError, match="missing"):
            signer.sign_transaction(SponsoredTransaction(from_address=signer.address, to=TARGET))

    def test_unsigned_has_no_hash(self, signer):
        with pytest.raises(ValueError):
            _ready_tx(signer.address).tx_hash()

    def test_random_wallet(self):
        wallet = LocalAccountSigner.create_random()
        assert wallet.address.startswith("0x")
        assert LocalAccountSigner.from_key(wallet.private_key).address == wallet.address


class TestWireFormat:
    def test_serialized_type_prefix(self, signer):
        raw = signer.sign_transaction(_ready_tx(signer.address)).serialize()
        assert raw.startswith("0x71")

    def test_parse_restores_fields(self, signer):
        signed = signer.sign_transaction(_ready_tx(signer.address, value=7))
        parsed = SponsoredTransaction.parse(signed.serialize())

        assert parsed.from_address == signer.address
        assert parsed.to == TARGET
        assert parsed.nonce == 3
        assert parsed.chain_id == 270
        assert parsed.gas_limit == 500_000
        assert parsed.max_fee_per_gas == 250_000_000
        assert parsed.value == 7
        assert parsed.data == signed.data
        assert parsed.paymaster_params == signed.paymaster_params
        assert parsed.tx_hash() == signed.tx_hash()
        assert recover_sender(parsed) == signer.address

    def test_parse_without_paymaster(self, signer):
        signed = signer.sign_transaction(_ready_tx(signer.address, paymaster_params=None))
        parsed = SponsoredTransaction.parse(signed.serialize())
        assert parsed.paymaster_params is None
        assert not parsed.is_sponsored

    def test_parse_rejects_other_types(self):
        with pytest.raises(ValueError):
            SponsoredTransaction.parse("0x02" + "c0")

    def test_parse_rejects_malformed_rlp(self):
        with pytest.raises(ValueError, match="Malformed"):
            SponsoredTransaction.parse("0x71ff")
