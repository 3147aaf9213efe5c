"""
End-to-end sponsorship flows.

A flow encodes the paymaster input, quotes the fee, checks the paymaster can
cover it, submits once and verifies that the paymaster (not the sender) paid:

    encode -> estimate -> funding check -> submit -> verify

The sample flows match the three demo paymasters: an ERC-20 paymaster using
the ApprovalBased flow, an NFT-gated paymaster and an open paymaster that
sponsors a gas-heavy loop. ``setup_local_*`` recreate their deployment state on
a ``LocalRollup``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_abi import encode as abi_encode
from web3 import Web3

from .address_book import AddressBook
from .config import PaymasterFlowsConfig
from .encoding import SponsorshipRequest, encode
from .errors import InsufficientFunding, WalletNotEmpty
from .fees import FeeEstimator, FeeQuote
from .local_network import LocalRollup
from .logging_utils import FlowLogger, OperationType
from .rpc_client import SponsorshipNetwork
from .signer import LocalAccountSigner, TransactionSigner
from .submitter import SponsoredTransactionSubmitter, TxReceipt
from .transaction import SponsoredTransaction
from .validator import ApprovalBasedPolicy, ERC721GatedPolicy, OpenPolicy
from .verifier import BalanceDelta, SponsorshipVerifier, take_snapshot

logger = logging.getLogger(__name__)

ERC20_PAYMASTER_FUNDING_WEI = Web3.to_wei("0.06", "ether")
ERC721_PAYMASTER_FUNDING_WEI = Web3.to_wei("0.01", "ether")
LOOP_PAYMASTER_FUNDING_WEI = Web3.to_wei("0.04", "ether")

ERC20_INITIAL_MINT = 3
ERC20_FLOW_MINT = 5
ERC721_SETUP_TOKEN = "Power Stone"
ERC721_FLOW_TOKEN = "Time Stone"


# ---------------------------------------------------------------------------
# Calldata builders
# ---------------------------------------------------------------------------


def _calldata(signature: str, types: list[str], values: list[Any]) -> bytes:
    selector = bytes(Web3.keccak(text=signature)[:4])
    return selector + (abi_encode(types, values) if types else b"")


def erc20_mint_call(to: str, amount: int) -> bytes:
    return _calldata("mint(address,uint256)", ["address", "uint256"], [to, amount])


def erc20_approve_call(spender: str, amount: int) -> bytes:
    return _calldata("approve(address,uint256)", ["address", "uint256"], [spender, amount])


def erc721_mint_call(to: str, token_name: str) -> bytes:
    return _calldata("mint(address,string)", ["address", "string"], [to, token_name])


def loop_call() -> bytes:
    return _calldata("loop()", [], [])


def set_loop_max_call(loop_max: int) -> bytes:
    return _calldata("setLoopMax(uint256)", ["uint256"], [loop_max])


def set_name_call(name: str) -> bytes:
    return _calldata("setName(string)", ["string"], [name])


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlowReport:
    flow: str
    receipt: TxReceipt
    quote: FeeQuote
    paymaster_delta: BalanceDelta
    sender_native_delta: BalanceDelta
    sender_token_delta: Optional[BalanceDelta] = None
    paymaster_token_delta: Optional[BalanceDelta] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow": self.flow,
            "receipt": self.receipt.to_dict(),
            "quote": self.quote.to_dict(),
            "paymaster_delta": self.paymaster_delta.signed,
            "sender_native_delta": self.sender_native_delta.signed,
            "sender_token_delta": self.sender_token_delta.signed if self.sender_token_delta else None,
            "paymaster_token_delta": (
                self.paymaster_token_delta.signed if self.paymaster_token_delta else None
            ),
        }


class SponsorshipFlow:
    """Runs sponsored calls for one signer on one network."""

    def __init__(
        self,
        network: SponsorshipNetwork,
        signer: TransactionSigner,
        config: Optional[PaymasterFlowsConfig] = None,
        flow_logger: Optional[FlowLogger] = None,
    ):
        self.network = network
        self.signer = signer
        self.config = config or PaymasterFlowsConfig()
        self.flow_logger = flow_logger or FlowLogger(config=self.config.logging)
        self.submitter = SponsoredTransactionSubmitter(network, signer, self.config, self.flow_logger)
        self.estimator = FeeEstimator(
            network,
            self.config.fees,
            gas_per_pubdata_floor=self.submitter.gas_per_pubdata_floor,
            flow_logger=self.flow_logger,
        )
        self.verifier = SponsorshipVerifier()

    async def ensure_wallet_empty(self) -> None:
        """The demos prove sponsorship by starting from a zero balance."""
        balance = await self.network.get_balance(self.signer.address)
        logger.info(f"Empty wallet {self.signer.address} balance: {balance} wei")
        if balance != 0:
            raise WalletNotEmpty(self.signer.address, balance)

    async def ensure_paymaster_funded(self, paymaster: str, quote: FeeQuote) -> int:
        async with self.flow_logger.operation_context(
            OperationType.FUNDING_CHECK, self.network.name, paymaster=paymaster,
        ):
            balance = await self.network.get_balance(paymaster)
            if balance < quote.fee_wei:
                raise InsufficientFunding(
                    f"Paymaster {paymaster} holds {balance} wei, quote needs {quote.fee_wei} wei",
                    mode=quote.mode.value if quote.mode else None,
                    reason="paymaster_underfunded",
                    details={"paymaster": paymaster, "balance_wei": balance, "fee_wei": quote.fee_wei},
                )
        logger.info(f"Paymaster {paymaster} balance is {Web3.from_wei(balance, 'ether')} ETH")
        return balance

    def build(self, request: SponsorshipRequest, to: str, data: bytes, value: int = 0) -> SponsoredTransaction:
        return SponsoredTransaction(
            from_address=self.signer.address,
            to=to,
            data=data,
            value=value,
            paymaster_params=encode(request),
            gas_per_pubdata_limit=self.config.submission.gas_per_pubdata_limit,
            max_priority_fee_per_gas=self.config.submission.max_priority_fee_per_gas,
        )

    async def quote(
        self,
        request: SponsorshipRequest,
        to: str,
        data: bytes,
        gas_limit_override: Optional[int] = None,
    ) -> Tuple[SponsoredTransaction, FeeQuote]:
        tx = self.build(request, to, data)
        quote = await self.estimator.estimate_fee(tx, gas_limit_override=gas_limit_override)
        return tx, quote

    async def run(
        self,
        request: SponsorshipRequest,
        to: str,
        data: bytes,
        *,
        flow: str = "custom",
        token: Optional[str] = None,
        gas_limit_override: Optional[int] = None,
        require_empty_wallet: bool = True,
        timeout_seconds: Optional[float] = None,
    ) -> FlowReport:
        """
        Sponsor one call to ``to``.

        ``token`` selects the asset whose sender/paymaster balances are
        reported alongside the native ones.
        """
        async with self.flow_logger.operation_context(
            OperationType.FLOW, self.network.name, flow=flow, mode=request.mode.value,
        ):
            if require_empty_wallet:
                await self.ensure_wallet_empty()

            tx, quote = await self.quote(request, to, data, gas_limit_override)
            paymaster = encode(request).paymaster
            logger.info(f"Transaction fee estimation is {quote.fee_ether} ETH")
            await self.ensure_paymaster_funded(paymaster, quote)

            sender = self.signer.address
            paymaster_before = await take_snapshot(self.network, paymaster)
            sender_before = await take_snapshot(self.network, sender)
            sender_token_before = await take_snapshot(self.network, sender, token) if token else None
            paymaster_token_before = await take_snapshot(self.network, paymaster, token) if token else None

            receipt = await self.submitter.submit(
                FeeEstimator.apply_quote(tx, quote), timeout_seconds=timeout_seconds,
            )

            async with self.flow_logger.operation_context(
                OperationType.VERIFICATION, self.network.name, tx_hash=receipt.tx_hash,
            ):
                report = self.verifier.verify(
                    receipt,
                    paymaster_before=paymaster_before,
                    paymaster_after=await take_snapshot(self.network, paymaster),
                    sender_before=sender_before,
                    sender_after=await take_snapshot(self.network, sender),
                    sender_token_before=sender_token_before,
                    sender_token_after=await take_snapshot(self.network, sender, token) if token else None,
                    paymaster_token_before=paymaster_token_before,
                    paymaster_token_after=(
                        await take_snapshot(self.network, paymaster, token) if token else None
                    ),
                    sender_native_value_wei=tx.value,
                )

        return FlowReport(
            flow=flow,
            receipt=receipt,
            quote=quote,
            paymaster_delta=report.paymaster_delta,
            sender_native_delta=report.sender_native_delta,
            sender_token_delta=report.sender_token_delta,
            paymaster_token_delta=report.paymaster_token_delta,
        )


# ---------------------------------------------------------------------------
# Sample flows
# ---------------------------------------------------------------------------


async def run_erc20_flow(
    flow: SponsorshipFlow,
    book: AddressBook,
    mint_amount: int = ERC20_FLOW_MINT,
    minimal_allowance: int = 1,
) -> FlowReport:
    """Mint ERC-20 tokens, paying the paymaster in the same token."""
    paymaster, token = book.require("paymaster_address", "token_address")
    request = SponsorshipRequest.approval_based(paymaster, token, minimal_allowance)
    return await flow.run(
        request,
        token,
        erc20_mint_call(flow.signer.address, mint_amount),
        flow="erc20",
        token=token,
    )


async def run_erc721_flow(
    flow: SponsorshipFlow,
    book: AddressBook,
    token_name: str = ERC721_FLOW_TOKEN,
) -> FlowReport:
    """Mint an NFT, sponsored because the sender already holds one."""
    paymaster, collection = book.require("paymaster_address", "nft_address")
    request = SponsorshipRequest.general(paymaster)
    return await flow.run(
        request,
        collection,
        erc721_mint_call(flow.signer.address, token_name),
        flow="erc721",
        token=collection,
    )


async def run_loop_flow(
    flow: SponsorshipFlow,
    book: AddressBook,
    gas_limit: Optional[int] = None,
) -> FlowReport:
    """Run the gas-heavy loop under a fixed gas limit."""
    paymaster, loop = book.require("paymaster_address", "loop_address")
    request = SponsorshipRequest.general(paymaster)
    return await flow.run(
        request,
        loop,
        loop_call(),
        flow="loop",
        gas_limit_override=gas_limit or flow.config.fees.default_fixed_gas_limit,
    )


# ---------------------------------------------------------------------------
# Local deployments
# ---------------------------------------------------------------------------


@dataclass
class LocalDemo:
    rollup: LocalRollup
    signer: LocalAccountSigner
    book: AddressBook


def setup_local_erc20_demo(
    rollup: Optional[LocalRollup] = None,
    signer: Optional[LocalAccountSigner] = None,
    funding_wei: int = ERC20_PAYMASTER_FUNDING_WEI,
    initial_tokens: int = ERC20_INITIAL_MINT,
    approve_allowance: Optional[int] = 1,
    price: int = 1,
) -> LocalDemo:
    """
    Token, ApprovalBased paymaster and an empty wallet holding a few tokens.

    ``approve_allowance`` is the allowance the wallet grants the paymaster
    up front; pass None to leave it unapproved.
    """
    rollup = rollup or LocalRollup()
    signer = signer or LocalAccountSigner.create_random()

    token = rollup.deploy_token("MyToken", "MyToken", 18)
    paymaster = rollup.deploy_paymaster(ApprovalBasedPolicy(token, price=price), funding_wei)
    rollup.mint_tokens(token, signer.address, initial_tokens)
    if approve_allowance is not None:
        rollup.approve(signer.address, token, paymaster, approve_allowance)

    book = AddressBook(
        paymaster_address=paymaster,
        token_address=token,
        empty_wallet_private_key=signer.private_key,
    )
    return LocalDemo(rollup, signer, book)


def setup_local_erc721_demo(
    rollup: Optional[LocalRollup] = None,
    signer: Optional[LocalAccountSigner] = None,
    funding_wei: int = ERC721_PAYMASTER_FUNDING_WEI,
    give_nft: bool = True,
) -> LocalDemo:
    """NFT collection, a paymaster gated on it, and a wallet holding one stone."""
    rollup = rollup or LocalRollup()
    signer = signer or LocalAccountSigner.create_random()

    collection = rollup.deploy_collection("InfinityStones")
    if give_nft:
        rollup.mint_nft(collection, signer.address, ERC721_SETUP_TOKEN)
    paymaster = rollup.deploy_paymaster(ERC721GatedPolicy(collection), funding_wei)

    book = AddressBook(
        paymaster_address=paymaster,
        nft_address=collection,
        empty_wallet_private_key=signer.private_key,
    )
    return LocalDemo(rollup, signer, book)


def setup_local_loop_demo(
    rollup: Optional[LocalRollup] = None,
    signer: Optional[LocalAccountSigner] = None,
    funding_wei: int = LOOP_PAYMASTER_FUNDING_WEI,
    loop_max: int = 1000,
) -> LocalDemo:
    """Loop contract and an open paymaster."""
    rollup = rollup or LocalRollup()
    signer = signer or LocalAccountSigner.create_random()

    loop = rollup.deploy_loop("Before Loop", loop_max)
    paymaster = rollup.deploy_paymaster(OpenPolicy(), funding_wei)

    book = AddressBook(
        paymaster_address=paymaster,
        loop_address=loop,
        empty_wallet_private_key=signer.private_key,
    )
    return LocalDemo(rollup, signer, book)


LOCAL_DEMOS = {
    "erc20": (setup_local_erc20_demo, run_erc20_flow),
    "erc721": (setup_local_erc721_demo, run_erc721_flow),
    "loop": (setup_local_loop_demo, run_loop_flow),
}
