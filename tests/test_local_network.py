"""
Tests for the in-process rollup.
"""
from __future__ import annotations

import pytest
from eth_abi import decode

from paymaster_flows.encoding import SponsorshipRequest, encode
from paymaster_flows.flows import erc20_mint_call, loop_call, set_loop_max_call
from paymaster_flows.local_network import (
    BOOTLOADER_ADDRESS,
    LocalRollup,
    MockERC20,
    TestLoop,
)
from paymaster_flows.rpc_client import RPCError
from paymaster_flows.transaction import SponsoredTransaction
from paymaster_flows.validator import ApprovalBasedPolicy, OpenPolicy, ValidationState


async def _signed_raw(rollup: LocalRollup, signer, tx: SponsoredTransaction, gas_limit: int = 2_000_000) -> str:
    nonce = await rollup.get_nonce(signer.address)
    ready = tx.with_fee(gas_limit, rollup.gas_price)
    ready.nonce = nonce
    ready.chain_id = rollup.chain_id
    return signer.sign_transaction(ready).serialize()


class TestSetup:
    def test_deploy_helpers(self, rollup):
        token = rollup.deploy_token()
        loop = rollup.deploy_loop(loop_max=10)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), funding_wei=1_000)

        assert isinstance(rollup.contract_at(token), MockERC20)
        assert isinstance(rollup.contract_at(loop), TestLoop)
        assert len({token, loop, paymaster}) == 3
        assert isinstance(rollup.policy_of(paymaster), OpenPolicy)

    @pytest.mark.asyncio
    async def test_fund_and_balances(self, rollup, signer):
        rollup.fund(signer.address, 5)
        token = rollup.deploy_token()
        rollup.mint_tokens(token, signer.address, 3)

        assert await rollup.get_balance(signer.address) == 5
        assert await rollup.get_balance(signer.address, token) == 3

    @pytest.mark.asyncio
    async def test_eth_call_reads_contract_state(self, rollup):
        loop = rollup.deploy_loop("Before Loop", 1000)
        name_call = "0x06fdde03"  # name()
        result = await rollup.eth_call({"to": loop, "data": name_call})
        assert decode(["string"], bytes.fromhex(result[2:]))[0] == "Before Loop"


class TestEstimateGas:
    @pytest.mark.asyncio
    async def test_estimate_does_not_change_state(self, rollup, signer):
        token = rollup.deploy_token()
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=token,
            data=erc20_mint_call(signer.address, 5),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )

        gas = await rollup.estimate_gas(tx)

        assert gas > 21_000
        assert await rollup.get_balance(signer.address, token) == 0
        assert await rollup.get_balance(paymaster) == 10**18

    @pytest.mark.asyncio
    async def test_gas_grows_with_loop_max(self, rollup, signer):
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        small = rollup.deploy_loop(loop_max=10)
        large = rollup.deploy_loop(loop_max=1000)

        def skeleton(target):
            return SponsoredTransaction(
                from_address=signer.address, to=target, data=loop_call(),
                paymaster_params=encode(SponsorshipRequest.general(paymaster)),
            )

        assert await rollup.estimate_gas(skeleton(large)) > await rollup.estimate_gas(skeleton(small))

    @pytest.mark.asyncio
    async def test_estimate_reports_revert(self, rollup, signer):
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        loop = rollup.deploy_loop()
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=b"\xde\xad\xbe\xef",
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )
        with pytest.raises(RPCError, match="execution reverted"):
            await rollup.estimate_gas(tx)


class TestSendRawTransaction:
    @pytest.mark.asyncio
    async def test_sponsored_call_settles(self, rollup, signer):
        loop = rollup.deploy_loop(loop_max=10)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )

        tx_hash = await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))
        receipt = await rollup.get_transaction_receipt(tx_hash)

        assert receipt["status"] == "0x1"
        fee = int(receipt["gasUsed"], 16) * int(receipt["effectiveGasPrice"], 16)
        assert await rollup.get_balance(paymaster) == 10**18 - fee
        assert await rollup.get_balance(BOOTLOADER_ADDRESS) == fee
        assert await rollup.get_nonce(signer.address) == 1
        assert rollup.contract_at(loop).counter == 10
        assert rollup.validation_of(tx_hash).state is ValidationState.SETTLED

    @pytest.mark.asyncio
    async def test_revert_restores_state(self, rollup, signer):
        loop = rollup.deploy_loop(loop_max=10)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=b"\xde\xad\xbe\xef",
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )

        tx_hash = await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))
        receipt = await rollup.get_transaction_receipt(tx_hash)

        assert receipt["status"] == "0x0"
        assert "selector" in receipt["revertReason"]
        assert await rollup.get_balance(paymaster) == 10**18
        assert rollup.validation_of(tx_hash).state is ValidationState.REVERTED

    @pytest.mark.asyncio
    async def test_out_of_gas_reverts(self, rollup, signer):
        loop = rollup.deploy_loop(loop_max=1000)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )

        tx_hash = await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx, gas_limit=60_000))
        receipt = await rollup.get_transaction_receipt(tx_hash)

        assert receipt["revertReason"] == "out of gas"
        assert rollup.contract_at(loop).counter == 0
        assert await rollup.get_balance(paymaster) == 10**18

    @pytest.mark.asyncio
    async def test_validation_rejection_raises(self, rollup, signer):
        token = rollup.deploy_token()
        paymaster = rollup.deploy_paymaster(ApprovalBasedPolicy(token), 10**18)
        rollup.mint_tokens(token, signer.address, 3)
        tx = SponsoredTransaction(
            from_address=signer.address, to=token,
            data=erc20_mint_call(signer.address, 5),
            paymaster_params=encode(SponsorshipRequest.approval_based(paymaster, token, 1)),
        )

        with pytest.raises(RPCError, match="Paymaster validation error"):
            await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))
        assert await rollup.get_nonce(signer.address) == 0
        assert await rollup.get_balance(signer.address, token) == 3

    @pytest.mark.asyncio
    async def test_auto_approve_paymaster(self, signer):
        rollup = LocalRollup(auto_approve_paymaster=True)
        token = rollup.deploy_token()
        paymaster = rollup.deploy_paymaster(ApprovalBasedPolicy(token), 10**18)
        rollup.mint_tokens(token, signer.address, 3)
        tx = SponsoredTransaction(
            from_address=signer.address, to=token,
            data=erc20_mint_call(signer.address, 5),
            paymaster_params=encode(SponsorshipRequest.approval_based(paymaster, token, 1)),
        )

        await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))

        assert await rollup.get_balance(signer.address, token) == 3 + 5 - 1
        assert await rollup.get_balance(paymaster, token) == 1
        assert await rollup.get_allowance(token, signer.address, paymaster) == 0

    @pytest.mark.asyncio
    async def test_unknown_paymaster(self, rollup, signer, sample_eth_address):
        loop = rollup.deploy_loop()
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            paymaster_params=encode(SponsorshipRequest.general(sample_eth_address)),
        )
        with pytest.raises(RPCError, match="is not a paymaster"):
            await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))

    @pytest.mark.asyncio
    async def test_underfunded_paymaster(self, rollup, signer):
        loop = rollup.deploy_loop(loop_max=10)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 1_000)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )
        with pytest.raises(RPCError, match="insufficient paymaster funds"):
            await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))

    @pytest.mark.asyncio
    async def test_low_gas_per_pubdata_rejected(self, rollup, signer):
        loop = rollup.deploy_loop()
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
            gas_per_pubdata_limit=10_000,
        )
        with pytest.raises(RPCError, match="gasPerPubdataByteLimit"):
            await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, rollup, signer):
        loop = rollup.deploy_loop()
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=set_loop_max_call(5),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
            gas_limit=1_000_000, max_fee_per_gas=rollup.gas_price, nonce=7, chain_id=rollup.chain_id,
        )
        with pytest.raises(RPCError, match="nonce"):
            await rollup.send_raw_transaction(signer.sign_transaction(tx).serialize())

    @pytest.mark.asyncio
    async def test_wrong_chain(self, rollup, signer):
        loop = rollup.deploy_loop()
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            gas_limit=1_000_000, max_fee_per_gas=rollup.gas_price, nonce=0, chain_id=324,
        )
        with pytest.raises(RPCError, match="chain id"):
            await rollup.send_raw_transaction(signer.sign_transaction(tx).serialize())

    @pytest.mark.asyncio
    async def test_unsponsored_sender_pays(self, rollup, signer, sample_eth_address):
        rollup.fund(signer.address, 10**18)
        tx = SponsoredTransaction(from_address=signer.address, to=sample_eth_address, value=1_000)

        tx_hash = await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx, gas_limit=21_000))
        receipt = await rollup.get_transaction_receipt(tx_hash)

        fee = int(receipt["gasUsed"], 16) * rollup.gas_price
        assert await rollup.get_balance(sample_eth_address) == 1_000
        assert await rollup.get_balance(signer.address) == 10**18 - 1_000 - fee

    @pytest.mark.asyncio
    async def test_garbage_rejected(self, rollup):
        with pytest.raises(RPCError, match="failed to parse"):
            await rollup.send_raw_transaction("0x71c0")

    @pytest.mark.asyncio
    async def test_malformed_rlp_rejected(self, rollup):
        with pytest.raises(RPCError, match="failed to parse"):
            await rollup.send_raw_transaction("0x71ff")


class TestPendingMode:
    @pytest.mark.asyncio
    async def test_receipt_only_after_mine(self, signer):
        rollup = LocalRollup(auto_mine=False)
        loop = rollup.deploy_loop(loop_max=10)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        tx = SponsoredTransaction(
            from_address=signer.address, to=loop, data=loop_call(),
            paymaster_params=encode(SponsorshipRequest.general(paymaster)),
        )

        tx_hash = await rollup.send_raw_transaction(await _signed_raw(rollup, signer, tx))
        assert await rollup.get_transaction_receipt(tx_hash) is None
        assert rollup.pending_count == 1
        assert rollup.contract_at(loop).counter == 0

        assert rollup.mine() == [tx_hash]
        assert (await rollup.get_transaction_receipt(tx_hash))["status"] == "0x1"
        assert rollup.contract_at(loop).counter == 10
