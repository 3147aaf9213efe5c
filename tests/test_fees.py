"""
Tests for paymaster_flows.fees.
"""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from paymaster_flows.config import FeeEstimationConfig
from paymaster_flows.encoding import SponsorshipMode, SponsorshipRequest, encode
from paymaster_flows.errors import (
    EstimationReverted,
    GasPerPubdataTooLow,
    InsufficientFunding,
    PreflightRejected,
    ValidationInputError,
)
from paymaster_flows.fees import FeeEstimator, FeeQuote
from paymaster_flows.flows import erc20_mint_call, loop_call
from paymaster_flows.local_network import DEFAULT_LOCAL_GAS_PRICE
from paymaster_flows.rpc_client import RPCError
from paymaster_flows.transaction import SponsoredTransaction
from paymaster_flows.validator import ApprovalBasedPolicy, OpenPolicy


def _skeleton(sender: str, to: str, paymaster: str, data: bytes = b"", request=None) -> SponsoredTransaction:
    request = request or SponsorshipRequest.general(paymaster)
    return SponsoredTransaction(from_address=sender, to=to, data=data, paymaster_params=encode(request))


def _mock_network(**overrides) -> AsyncMock:
    network = AsyncMock()
    network.name = "mock"
    network.get_gas_price.return_value = 1_000
    network.estimate_gas.return_value = 100_000
    for name, value in overrides.items():
        setattr(network, name, value)
    return network


class TestFeeQuote:
    def test_fee_is_limit_times_price(self):
        quote = FeeQuote(gas_limit=200_000, gas_price=250_000_000)
        assert quote.fee_wei == 50_000_000_000_000
        assert quote.fee_ether == Decimal("0.00005")

    def test_to_dict(self):
        quote = FeeQuote(10, 2, SponsorshipMode.GENERAL)
        assert quote.to_dict()["fee_wei"] == 20
        assert quote.to_dict()["mode"] == "General"


class TestEstimateFee:
    @pytest.mark.asyncio
    async def test_quote_uses_estimate_and_price(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        estimator = FeeEstimator(network)

        quote = await estimator.estimate_fee(_skeleton(signer.address, sample_token_address, sample_eth_address))

        assert quote.gas_limit == 100_000
        assert quote.gas_price == 1_000
        assert quote.fee_wei == 100_000_000
        assert quote.mode is SponsorshipMode.GENERAL

    @pytest.mark.asyncio
    async def test_estimate_sees_paymaster_params(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        await FeeEstimator(network).estimate_fee(
            _skeleton(signer.address, sample_token_address, sample_eth_address)
        )
        sent = network.estimate_gas.call_args.args[0]
        assert sent.paymaster_params.paymaster == sample_eth_address

    @pytest.mark.asyncio
    async def test_explicit_price(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        quote = await FeeEstimator(network).estimate_fee(
            _skeleton(signer.address, sample_token_address, sample_eth_address), gas_price=7,
        )
        assert quote.gas_price == 7
        network.get_gas_price.assert_not_called()

    @pytest.mark.asyncio
    async def test_buffer_rounds_up(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        network.estimate_gas.return_value = 1_001
        estimator = FeeEstimator(network, FeeEstimationConfig(gas_limit_buffer_percent=10))

        quote = await estimator.estimate_fee(_skeleton(signer.address, sample_token_address, sample_eth_address))

        assert quote.gas_limit == 1_102

    @pytest.mark.asyncio
    async def test_gas_limit_override_skips_estimate(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        quote = await FeeEstimator(network).estimate_fee(
            _skeleton(signer.address, sample_token_address, sample_eth_address),
            gas_limit_override=100_000_000,
        )
        assert quote.gas_limit == 100_000_000
        network.estimate_gas.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_paymaster_params(self, signer, sample_token_address):
        estimator = FeeEstimator(_mock_network())
        with pytest.raises(ValidationInputError) as exc_info:
            await estimator.estimate_fee(SponsoredTransaction(from_address=signer.address, to=sample_token_address))
        assert exc_info.value.reason == "missing_paymaster_params"

    @pytest.mark.asyncio
    async def test_pubdata_floor(self, signer, sample_token_address, sample_eth_address):
        tx = _skeleton(signer.address, sample_token_address, sample_eth_address)
        tx.gas_per_pubdata_limit = 800
        with pytest.raises(GasPerPubdataTooLow):
            await FeeEstimator(_mock_network()).estimate_fee(tx)

    @pytest.mark.asyncio
    async def test_max_fee(self, sample_eth_address, sample_token_address, signer):
        estimator = FeeEstimator(_mock_network(), FeeEstimationConfig(max_fee_wei=99_999_999))
        with pytest.raises(PreflightRejected) as exc_info:
            await estimator.estimate_fee(_skeleton(signer.address, sample_token_address, sample_eth_address))
        assert exc_info.value.reason == "fee_above_maximum"


class TestEstimateErrors:
    @pytest.mark.asyncio
    async def test_validation_revert(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        network.estimate_gas.side_effect = RPCError(
            "failed to validate the transaction. reason: Validation revert: "
            "Paymaster validation error: Min allowance too low",
            code=3,
        )

        with pytest.raises(EstimationReverted) as exc_info:
            await FeeEstimator(network).estimate_fee(
                _skeleton(signer.address, sample_token_address, sample_eth_address)
            )

        assert exc_info.value.reason == "Validation revert: Paymaster validation error: Min allowance too low"
        assert exc_info.value.mode == "General"
        assert isinstance(exc_info.value.__cause__, RPCError)

    @pytest.mark.asyncio
    async def test_funding_error(self, sample_eth_address, sample_token_address, signer):
        network = _mock_network()
        network.estimate_gas.side_effect = RPCError("Paymaster validation error: insufficient paymaster funds")

        with pytest.raises(InsufficientFunding):
            await FeeEstimator(network).estimate_fee(
                _skeleton(signer.address, sample_token_address, sample_eth_address)
            )


class TestAgainstLocalRollup:
    @pytest.mark.asyncio
    async def test_approval_based_costs_more_than_general(self, rollup, signer):
        token = rollup.deploy_token()
        rollup.mint_tokens(token, signer.address, 3)
        open_paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        token_paymaster = rollup.deploy_paymaster(ApprovalBasedPolicy(token), 10**18)
        rollup.approve(signer.address, token, token_paymaster, 1)
        estimator = FeeEstimator(rollup)
        data = erc20_mint_call(signer.address, 5)

        general = await estimator.estimate_fee(_skeleton(signer.address, token, open_paymaster, data))
        approval = await estimator.estimate_fee(_skeleton(
            signer.address, token, token_paymaster, data,
            SponsorshipRequest.approval_based(token_paymaster, token, 1),
        ))

        assert approval.gas_limit > general.gas_limit
        assert general.gas_price == approval.gas_price == DEFAULT_LOCAL_GAS_PRICE

    @pytest.mark.asyncio
    async def test_unapproved_allowance_reverts(self, rollup, signer):
        token = rollup.deploy_token()
        rollup.mint_tokens(token, signer.address, 3)
        paymaster = rollup.deploy_paymaster(ApprovalBasedPolicy(token), 10**18)

        with pytest.raises(EstimationReverted, match="allowance"):
            await FeeEstimator(rollup).estimate_fee(_skeleton(
                signer.address, token, paymaster, erc20_mint_call(signer.address, 5),
                SponsorshipRequest.approval_based(paymaster, token, 1),
            ))

    @pytest.mark.asyncio
    async def test_reverting_call(self, rollup, signer):
        loop = rollup.deploy_loop()
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        with pytest.raises(EstimationReverted):
            await FeeEstimator(rollup).estimate_fee(
                _skeleton(signer.address, loop, paymaster, b"\xde\xad\xbe\xef")
            )

    @pytest.mark.asyncio
    async def test_loop_quote(self, rollup, signer):
        loop = rollup.deploy_loop(loop_max=1000)
        paymaster = rollup.deploy_paymaster(OpenPolicy(), 10**18)
        quote = await FeeEstimator(rollup).estimate_fee(_skeleton(signer.address, loop, paymaster, loop_call()))
        assert quote.gas_limit > 1000 * 250
