"""Gas sponsorship through zkSync paymasters."""

from .encoding import (
    SponsorshipMode,
    SponsorshipRequest,
    GeneralParams,
    ApprovalBasedParams,
    EncodedPaymasterParams,
    encode,
    get_paymaster_params,
    decode_paymaster_input,
)
from .errors import (
    PaymasterFlowError,
    ValidationInputError,
    InvalidAddress,
    InvalidAllowance,
    GasPerPubdataTooLow,
    WalletNotEmpty,
    MissingConfigurationError,
    UnsupportedPaymasterFlow,
    PreflightRejected,
    EstimationReverted,
    SubmissionRejected,
    ExecutionReverted,
    SubmissionTimeout,
    InsufficientFunding,
    SponsorshipVerificationError,
)
from .transaction import SponsoredTransaction
from .signer import TransactionSigner, LocalAccountSigner, recover_sender
from .fees import FeeQuote, FeeEstimator
from .validator import (
    ValidationState,
    ValidatorDecision,
    SponsorshipValidation,
    OpenPolicy,
    AllowListPolicy,
    ERC721GatedPolicy,
    ApprovalBasedPolicy,
    CappedPolicy,
)
from .rpc_client import SponsorshipNetwork, ZkSyncRPCClient
from .local_network import LocalRollup
from .submitter import TxReceipt, SponsoredTransactionSubmitter
from .verifier import BalanceSnapshot, BalanceDelta, DeltaKind, SponsorshipVerifier, diff, take_snapshot
from .address_book import AddressBook
from .flows import SponsorshipFlow, FlowReport, run_erc20_flow, run_erc721_flow, run_loop_flow

__all__ = [
    "SponsorshipMode",
    "SponsorshipRequest",
    "GeneralParams",
    "ApprovalBasedParams",
    "EncodedPaymasterParams",
    "encode",
    "get_paymaster_params",
    "decode_paymaster_input",
    "PaymasterFlowError",
    "ValidationInputError",
    "InvalidAddress",
    "InvalidAllowance",
    "GasPerPubdataTooLow",
    "WalletNotEmpty",
    "MissingConfigurationError",
    "UnsupportedPaymasterFlow",
    "PreflightRejected",
    "EstimationReverted",
    "SubmissionRejected",
    "ExecutionReverted",
    "SubmissionTimeout",
    "InsufficientFunding",
    "SponsorshipVerificationError",
    "SponsoredTransaction",
    "TransactionSigner",
    "LocalAccountSigner",
    "recover_sender",
    "FeeQuote",
    "FeeEstimator",
    "ValidationState",
    "ValidatorDecision",
    "SponsorshipValidation",
    "OpenPolicy",
    "AllowListPolicy",
    "ERC721GatedPolicy",
    "ApprovalBasedPolicy",
    "CappedPolicy",
    "SponsorshipNetwork",
    "ZkSyncRPCClient",
    "LocalRollup",
    "TxReceipt",
    "SponsoredTransactionSubmitter",
    "BalanceSnapshot",
    "BalanceDelta",
    "DeltaKind",
    "SponsorshipVerifier",
    "diff",
    "take_snapshot",
    "AddressBook",
    "SponsorshipFlow",
    "FlowReport",
    "run_erc20_flow",
    "run_erc721_flow",
    "run_loop_flow",
]
