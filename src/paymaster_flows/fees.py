"""
Fee estimation for sponsored transactions.

The estimate runs with the paymaster params attached, so the node includes the
paymaster's validation cost (which differs between General and ApprovalBased
flows). The resulting gas limit and price become hard caps on the transaction:
the network can never charge the paymaster more than ``FeeQuote.fee_wei``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from web3 import Web3

from .config import DEFAULT_GAS_PER_PUBDATA_LIMIT, FeeEstimationConfig
from .encoding import SponsorshipMode
from .errors import PreflightRejected, ValidationInputError, classify_rpc_error
from .logging_utils import FlowLogger, OperationType
from .rpc_client import RPCError, SponsorshipNetwork
from .transaction import SponsoredTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeQuote:
    """Gas limit and price for one sponsored transaction."""
    gas_limit: int
    gas_price: int
    mode: Optional[SponsorshipMode] = None

    @property
    def fee_wei(self) -> int:
        return self.gas_limit * self.gas_price

    @property
    def fee_ether(self) -> Decimal:
        return Decimal(Web3.from_wei(self.fee_wei, "ether"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gas_limit": self.gas_limit,
            "gas_price": self.gas_price,
            "fee_wei": self.fee_wei,
            "fee_ether": str(self.fee_ether),
            "mode": self.mode.value if self.mode else None,
        }


class FeeEstimator:
    """Quotes fees for transaction skeletons that carry paymaster params."""

    def __init__(
        self,
        network: SponsorshipNetwork,
        config: Optional[FeeEstimationConfig] = None,
        gas_per_pubdata_floor: int = DEFAULT_GAS_PER_PUBDATA_LIMIT,
        flow_logger: Optional[FlowLogger] = None,
    ):
        self._network = network
        self._config = config or FeeEstimationConfig()
        self._floor = gas_per_pubdata_floor
        self._flow_logger = flow_logger or FlowLogger()

    def _buffered(self, estimated_gas: int) -> int:
        buffer = self._config.gas_limit_buffer_percent
        if buffer <= 0:
            return estimated_gas
        return -(-estimated_gas * (100 + buffer) // 100)

    async def estimate_fee(
        self,
        tx: SponsoredTransaction,
        gas_price: Optional[int] = None,
        gas_limit_override: Optional[int] = None,
    ) -> FeeQuote:
        """
        Quote ``tx``.

        Args:
            tx: Skeleton with paymaster params and no gas fields
            gas_price: Price to quote at; current network price when None
            gas_limit_override: Fixed limit for calls that cannot be estimated

        Raises:
            ValidationInputError: Malformed skeleton
            EstimationReverted: Simulated execution or validation reverted
            InsufficientFunding: Node reports the paymaster cannot pay
            PreflightRejected: Quote above the configured ``max_fee_wei``
        """
        if tx.paymaster_params is None:
            raise ValidationInputError(
                "Fee quotes need a transaction with paymaster params",
                reason="missing_paymaster_params",
            )
        tx.validate(self._floor)
        mode = tx.paymaster_params.mode

        async with self._flow_logger.operation_context(
            OperationType.FEE_ESTIMATION, self._network.name, mode=mode.value,
        ) as op:
            if gas_price is None:
                gas_price = await self._network.get_gas_price()

            if gas_limit_override is not None:
                if gas_limit_override <= 0:
                    raise ValueError("gas_limit_override must be positive")
                gas_limit = gas_limit_override
            else:
                try:
                    estimated = await self._network.estimate_gas(tx)
                except RPCError as e:
                    raise classify_rpc_error(
                        str(e), stage="estimate", mode=mode.value,
                        details={"code": e.code, "paymaster": tx.paymaster_params.paymaster},
                    ) from e
                gas_limit = self._buffered(estimated)

            quote = FeeQuote(gas_limit=gas_limit, gas_price=gas_price, mode=mode)
            op.metadata.update(quote.to_dict())

            max_fee = self._config.max_fee_wei
            if max_fee is not None and quote.fee_wei > max_fee:
                raise PreflightRejected(
                    f"Quoted fee {quote.fee_wei} wei exceeds the configured maximum {max_fee} wei",
                    mode=mode.value,
                    reason="fee_above_maximum",
                    details=quote.to_dict(),
                )

        self._flow_logger.log_fee_quote(self._network.name, mode.value, gas_limit, gas_price, quote.fee_wei)
        return quote

    @staticmethod
    def apply_quote(tx: SponsoredTransaction, quote: FeeQuote) -> SponsoredTransaction:
        """Copy of ``tx`` capped at the quoted gas limit and price."""
        return tx.with_fee(quote.gas_limit, quote.gas_price)
