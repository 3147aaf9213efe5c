"""
Error taxonomy for sponsored transactions.

Input-shape errors are raised locally before any network call. Everything the
network reports is surfaced with the sponsorship mode and the node's reason so
callers can decide whether to adjust the request (raise the allowance, top up
the paymaster) before trying again. Nothing here is retried automatically.
"""
from __future__ import annotations

from typing import Any, Optional


class PaymasterFlowError(Exception):
    """Base class for all sponsorship errors."""

    def __init__(
        self,
        message: str,
        *,
        mode: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.mode = mode
        self.reason = reason
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "mode": self.mode,
            "reason": self.reason,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Local input validation
# ---------------------------------------------------------------------------


class ValidationInputError(PaymasterFlowError):
    """Malformed request, rejected before it reaches the network."""


class InvalidAddress(ValidationInputError):
    def __init__(self, field: str, value: Any):
        self.field = field
        self.value = value
        super().__init__(f"Invalid address for {field}: {value!r}", reason="invalid_address")


class InvalidAllowance(ValidationInputError):
    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            f"minimal_allowance must be an integer >= 1, got {value!r}",
            mode="ApprovalBased",
            reason="invalid_allowance",
        )


class GasPerPubdataTooLow(ValidationInputError):
    def __init__(self, value: int, floor: int):
        self.value = value
        self.floor = floor
        super().__init__(
            f"gas_per_pubdata_limit {value} is below the network floor {floor}",
            reason="gas_per_pubdata_too_low",
        )


class WalletNotEmpty(ValidationInputError):
    def __init__(self, address: str, balance_wei: int):
        self.address = address
        self.balance_wei = balance_wei
        super().__init__("The wallet is not empty!", reason="wallet_not_empty",
                         details={"address": address, "balance_wei": balance_wei})


class MissingConfigurationError(ValidationInputError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"Please ensure all of {', '.join(missing)} are set in the address book",
            reason="missing_configuration",
        )


class UnsupportedPaymasterFlow(ValidationInputError):
    """paymasterInput does not start with a known flow selector."""


# ---------------------------------------------------------------------------
# Network-observed outcomes
# ---------------------------------------------------------------------------


class PreflightRejected(PaymasterFlowError):
    """Simulated validation would fail; nothing was submitted."""


class EstimationReverted(PreflightRejected):
    """Gas estimation reverted (validator rejection or failing call)."""


class SubmissionRejected(PaymasterFlowError):
    """The paymaster rejected the transaction at submission time."""


class ExecutionReverted(PaymasterFlowError):
    """The wrapped call reverted after acceptance; nothing was committed."""

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, **kwargs: Any):
        self.tx_hash = tx_hash
        super().__init__(message, **kwargs)


class SubmissionTimeout(PaymasterFlowError):
    """
    Finality was not observed in time.

    The transaction may still be included later. Only resubmit once it is
    known not to have landed.
    """

    def __init__(self, tx_hash: str, timeout_seconds: float, **kwargs: Any):
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Transaction {tx_hash} not final after {timeout_seconds}s",
            reason="timeout",
            **kwargs,
        )


class InsufficientFunding(PaymasterFlowError):
    """The paymaster's native balance cannot cover the committed fee."""


class SponsorshipVerificationError(PaymasterFlowError):
    """Post-submission balance checks did not match the expected outcome."""


# ---------------------------------------------------------------------------
# Node error classification
# ---------------------------------------------------------------------------

_FUNDING_MARKERS = (
    "paymaster balance",
    "insufficient paymaster funds",
    "not enough balance for fee",
    "failed to transfer tx fee to the bootloader",
)

_VALIDATION_MARKERS = (
    "paymaster validation",
    "validation revert",
    "failed to validate",
    "rejected by paymaster",
)


def classify_rpc_error(
    message: str,
    *,
    stage: str,
    mode: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> PaymasterFlowError:
    """
    Map a node error message to the error taxonomy.

    ``stage`` is ``"estimate"`` or ``"submit"``. Funding problems are reported
    as InsufficientFunding in both stages; anything else is a preflight
    rejection when estimating and a submission rejection when submitting.
    """
    lowered = message.lower()
    reason = _extract_reason(message)

    if any(marker in lowered for marker in _FUNDING_MARKERS):
        return InsufficientFunding(
            f"Paymaster cannot cover the fee: {reason}",
            mode=mode, reason=reason, details=details,
        )

    if stage == "estimate":
        return EstimationReverted(
            f"Fee estimation reverted: {reason}",
            mode=mode, reason=reason, details=details,
        )

    if any(marker in lowered for marker in _VALIDATION_MARKERS) or "revert" in lowered:
        return SubmissionRejected(
            f"Sponsored transaction rejected: {reason}",
            mode=mode, reason=reason, details=details,
        )

    return SubmissionRejected(
        f"Node refused the transaction: {reason}",
        mode=mode, reason=reason, details=details,
    )


def _extract_reason(message: str) -> str:
    """Take the innermost reason from messages like 'a: b: reason'."""
    lowered = message.lower()
    for marker in ("reason:", "execution reverted:"):
        idx = lowered.rfind(marker)
        if idx != -1:
            extracted = message[idx + len(marker):].strip()
            if extracted:
                return extracted
    return message.strip()
