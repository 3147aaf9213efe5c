"""
Network-side sponsorship validation.

The paymaster contract runs on the network, so the client never calls it
directly. This module models what it does as an explicit state machine so the
local rollup (and tests) honour the same transitions a live paymaster does:

    RECEIVED -> VALIDATING -> ACCEPTED -> EXECUTING -> SETTLED
                           \\-> REJECTED          \\-> REVERTED

REJECTED and REVERTED leave no trace: the wrapped call does not run (or is
rolled back), the paymaster pays nothing and no tokens move.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from eth_utils import to_checksum_address

from .encoding import ApprovalBasedParams, ModeParams, SponsorshipMode
from .transaction import SponsoredTransaction

logger = logging.getLogger(__name__)

INSUFFICIENT_FUNDS_REASON = "insufficient paymaster funds"


class ValidationState(str, Enum):
    """Lifecycle of one sponsored transaction attempt."""
    RECEIVED = "received"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXECUTING = "executing"
    SETTLED = "settled"
    REVERTED = "reverted"


_ALLOWED_TRANSITIONS: Dict[ValidationState, FrozenSet[ValidationState]] = {
    ValidationState.RECEIVED: frozenset({ValidationState.VALIDATING}),
    ValidationState.VALIDATING: frozenset({ValidationState.ACCEPTED, ValidationState.REJECTED}),
    ValidationState.ACCEPTED: frozenset({ValidationState.EXECUTING}),
    ValidationState.EXECUTING: frozenset({ValidationState.SETTLED, ValidationState.REVERTED}),
    ValidationState.REJECTED: frozenset(),
    ValidationState.SETTLED: frozenset(),
    ValidationState.REVERTED: frozenset(),
}

TERMINAL_STATES = frozenset(
    {ValidationState.REJECTED, ValidationState.SETTLED, ValidationState.REVERTED}
)


class InvalidStateTransition(Exception):
    def __init__(self, current: ValidationState, requested: ValidationState):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move from {current.value} to {requested.value}")


@dataclass(frozen=True)
class ValidatorDecision:
    accepted: bool
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "ValidatorDecision":
        return cls(True)

    @classmethod
    def reject(cls, reason: str) -> "ValidatorDecision":
        return cls(False, reason)


@dataclass
class ValidationContext:
    """What a paymaster can see while validating one transaction."""
    sender: str
    paymaster: str
    tx: SponsoredTransaction
    mode: SponsorshipMode
    params: ModeParams
    paymaster_balance_wei: int
    # (token, owner, spender) -> allowance
    allowance_of: Callable[[str, str, str], int]
    # (token, owner) -> balance
    balance_of: Callable[[str, str], int]
    day: str = field(default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%d"))

    @property
    def required_fee_wei(self) -> int:
        return self.tx.max_cost_wei


class SponsorshipPolicy(ABC):
    """Acceptance policy of one paymaster."""

    supported_mode: SponsorshipMode = SponsorshipMode.GENERAL

    # Extra gas the policy's checks cost during validation. ApprovalBased
    # policies read an allowance and move tokens; General ones do less.
    validation_gas: int = 10_000

    def evaluate(self, ctx: ValidationContext) -> ValidatorDecision:
        if ctx.mode is not self.supported_mode:
            return ValidatorDecision.reject("Unsupported paymaster flow")
        return self.check(ctx)

    @abstractmethod
    def check(self, ctx: ValidationContext) -> ValidatorDecision:
        """Mode already matches; decide acceptance."""

    def token_pull(self, ctx: ValidationContext) -> Optional[Tuple[str, int]]:
        """(token, amount) taken from the sender on acceptance, if any."""
        return None

    def on_settled(self, ctx: ValidationContext, fee_wei: int) -> None:
        return None


class OpenPolicy(SponsorshipPolicy):
    """Sponsors every General-flow transaction."""

    validation_gas = 5_000

    def check(self, ctx: ValidationContext) -> ValidatorDecision:
        return ValidatorDecision.accept()


class AllowListPolicy(SponsorshipPolicy):
    """Sponsors only listed senders."""

    validation_gas = 7_500

    def __init__(self, senders: Iterable[str]):
        self.senders = frozenset(to_checksum_address(s) for s in senders)

    def check(self, ctx: ValidationContext) -> ValidatorDecision:
        if to_checksum_address(ctx.sender) not in self.senders:
            return ValidatorDecision.reject("Sender not in allow-list")
        return ValidatorDecision.accept()


class ERC721GatedPolicy(SponsorshipPolicy):
    """Sponsors holders of at least one token of an NFT collection."""

    validation_gas = 12_000

    def __init__(self, collection: str):
        self.collection = to_checksum_address(collection)

    def check(self, ctx: ValidationContext) -> ValidatorDecision:
        if ctx.balance_of(self.collection, ctx.sender) < 1:
            return ValidatorDecision.reject(
                "User does not hold the required NFT asset and therefore must pay for their own gas!"
            )
        return ValidatorDecision.accept()


class ApprovalBasedPolicy(SponsorshipPolicy):
    """
    Sponsors senders that approved the paymaster on ``token``.

    Accepts iff the sender's allowance to the paymaster is at least the
    ``minimal_allowance`` carried in the paymaster input. On acceptance the
    paymaster pulls ``price`` tokens, so ``minimal_allowance`` must cover it.
    """

    supported_mode = SponsorshipMode.APPROVAL_BASED
    validation_gas = 30_000

    def __init__(self, token: str, price: int = 1):
        if price < 0:
            raise ValueError("price must be >= 0")
        self.token = to_checksum_address(token)
        self.price = price

    def check(self, ctx: ValidationContext) -> ValidatorDecision:
        params = ctx.params
        if not isinstance(params, ApprovalBasedParams):
            return ValidatorDecision.reject("Unsupported paymaster flow")
        if to_checksum_address(params.token) != self.token:
            return ValidatorDecision.reject("Invalid token")

        allowance = ctx.allowance_of(self.token, ctx.sender, ctx.paymaster)
        if allowance < params.minimal_allowance:
            return ValidatorDecision.reject(
                f"Min allowance too low: allowance={allowance} required={params.minimal_allowance}"
            )

        if params.minimal_allowance < self.price:
            return ValidatorDecision.reject(
                f"Min allowance too low: minimal_allowance={params.minimal_allowance} price={self.price}"
            )
        if ctx.balance_of(self.token, ctx.sender) < self.price:
            return ValidatorDecision.reject("Failed to transferFrom from users' account")
        return ValidatorDecision.accept()

    def token_pull(self, ctx: ValidationContext) -> Optional[Tuple[str, int]]:
        return (self.token, self.price) if self.price > 0 else None


class CappedPolicy(SponsorshipPolicy):
    """Per-transaction and daily spend caps on top of another policy."""

    def __init__(self, inner: SponsorshipPolicy, per_tx_wei: int, daily_wei: int):
        if per_tx_wei <= 0 or daily_wei <= 0:
            raise ValueError("caps must be positive")
        self.inner = inner
        self.per_tx_wei = per_tx_wei
        self.daily_wei = daily_wei
        self.supported_mode = inner.supported_mode
        self.validation_gas = inner.validation_gas + 5_000
        self._daily_usage_wei: Dict[str, int] = {}

    def check(self, ctx: ValidationContext) -> ValidatorDecision:
        decision = self.inner.evaluate(ctx)
        if not decision.accepted:
            return decision

        required = ctx.required_fee_wei
        if required > self.per_tx_wei:
            return ValidatorDecision.reject(
                f"per-transaction sponsorship cap exceeded: required={required} cap={self.per_tx_wei}"
            )
        projected = self._daily_usage_wei.get(ctx.day, 0) + required
        if projected > self.daily_wei:
            return ValidatorDecision.reject(
                f"daily sponsorship cap exceeded: projected={projected} cap={self.daily_wei}"
            )
        return decision

    def token_pull(self, ctx: ValidationContext) -> Optional[Tuple[str, int]]:
        return self.inner.token_pull(ctx)

    def on_settled(self, ctx: ValidationContext, fee_wei: int) -> None:
        self._daily_usage_wei[ctx.day] = self._daily_usage_wei.get(ctx.day, 0) + fee_wei
        self.inner.on_settled(ctx, fee_wei)

    def snapshot_usage(self) -> Dict[str, Any]:
        return {
            "caps": {"per_tx_wei": self.per_tx_wei, "daily_wei": self.daily_wei},
            "daily_usage_wei": dict(self._daily_usage_wei),
        }


class SponsorshipValidation:
    """One pass of a transaction through a paymaster."""

    def __init__(self, tx_hash: str, policy: SponsorshipPolicy):
        self.tx_hash = tx_hash
        self.policy = policy
        self.state = ValidationState.RECEIVED
        self.history: List[ValidationState] = [ValidationState.RECEIVED]
        self.decision: Optional[ValidatorDecision] = None
        self.fee_charged_wei: Optional[int] = None
        self.revert_reason: Optional[str] = None

    def _transition(self, new_state: ValidationState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state, new_state)
        logger.debug(f"Sponsorship {self.tx_hash}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def validate(self, ctx: ValidationContext) -> ValidatorDecision:
        self._transition(ValidationState.VALIDATING)

        decision = self.policy.evaluate(ctx)
        if decision.accepted and ctx.paymaster_balance_wei < ctx.required_fee_wei:
            decision = ValidatorDecision.reject(
                f"{INSUFFICIENT_FUNDS_REASON}: balance={ctx.paymaster_balance_wei} "
                f"required={ctx.required_fee_wei}"
            )

        self.decision = decision
        self._transition(ValidationState.ACCEPTED if decision.accepted else ValidationState.REJECTED)
        return decision

    def start_execution(self) -> None:
        self._transition(ValidationState.EXECUTING)

    def settle(self, ctx: ValidationContext, fee_wei: int) -> None:
        self._transition(ValidationState.SETTLED)
        self.fee_charged_wei = fee_wei
        self.policy.on_settled(ctx, fee_wei)

    def abort(self, reason: str) -> None:
        self._transition(ValidationState.REVERTED)
        self.revert_reason = reason
