"""
Sponsored transaction submission.

Each transaction is signed and sent exactly once, then polled until it is
final or the timeout elapses. Nothing is retried: a timed-out transaction may
still land, so resubmitting it blindly could double-spend the paymaster.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from .config import (
    DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
    DEFAULT_GAS_PER_PUBDATA_LIMIT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    NetworkConfig,
    PaymasterFlowsConfig,
)
from .encoding import SponsorshipMode
from .errors import ExecutionReverted, SubmissionTimeout, ValidationInputError, classify_rpc_error
from .logging_utils import FlowLogger, OperationType
from .rpc_client import AllEndpointsFailedError, RPCError, SponsorshipNetwork
from .signer import TransactionSigner
from .transaction import SponsoredTransaction

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class TxReceipt:
    """Finalized outcome of a submitted transaction."""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int
    paymaster: Optional[str] = None
    mode: Optional[SponsorshipMode] = None
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def fee_wei(self) -> int:
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(
        cls,
        data: Dict[str, Any],
        paymaster: Optional[str] = None,
        mode: Optional[SponsorshipMode] = None,
    ) -> "TxReceipt":
        return cls(
            tx_hash=data["transactionHash"],
            status=_as_int(data.get("status")),
            block_number=_as_int(data.get("blockNumber")),
            gas_used=_as_int(data.get("gasUsed")),
            effective_gas_price=_as_int(data.get("effectiveGasPrice")),
            paymaster=paymaster,
            mode=mode,
            revert_reason=data.get("revertReason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "effective_gas_price": self.effective_gas_price,
            "fee_wei": self.fee_wei,
            "paymaster": self.paymaster,
            "mode": self.mode.value if self.mode else None,
        }


class SponsoredTransactionSubmitter:
    """Signs, sends and awaits sponsored transactions on one network."""

    def __init__(
        self,
        network: SponsorshipNetwork,
        signer: TransactionSigner,
        config: Optional[PaymasterFlowsConfig] = None,
        flow_logger: Optional[FlowLogger] = None,
    ):
        self._network = network
        self._signer = signer
        self._config = config or PaymasterFlowsConfig()
        self._flow_logger = flow_logger or FlowLogger(config=self._config.logging)

    def _network_config(self) -> Optional[NetworkConfig]:
        if self._config.is_network_supported(self._network.name):
            return self._config.get_network_config(self._network.name)
        return None

    @property
    def confirmation_timeout(self) -> float:
        if self._config.submission.confirmation_timeout_seconds is not None:
            return self._config.submission.confirmation_timeout_seconds
        network_config = self._network_config()
        if network_config is not None:
            return network_config.confirmation_timeout_seconds
        return DEFAULT_CONFIRMATION_TIMEOUT_SECONDS

    @property
    def poll_interval(self) -> float:
        if self._config.submission.poll_interval_seconds is not None:
            return self._config.submission.poll_interval_seconds
        network_config = self._network_config()
        if network_config is not None:
            return network_config.poll_interval_seconds
        return DEFAULT_POLL_INTERVAL_SECONDS

    @property
    def confirmations_required(self) -> int:
        network_config = self._network_config()
        return network_config.confirmations_required if network_config else 1

    @property
    def gas_per_pubdata_floor(self) -> int:
        network_config = self._network_config()
        return network_config.gas_per_pubdata_floor if network_config else DEFAULT_GAS_PER_PUBDATA_LIMIT

    async def prepare(self, tx: SponsoredTransaction) -> SponsoredTransaction:
        """Validate ``tx`` and fill in nonce and chain id."""
        tx.validate(self.gas_per_pubdata_floor)
        if tx.from_address != self._signer.address:
            raise ValidationInputError(
                f"Transaction is from {tx.from_address} but the signer is {self._signer.address}",
                reason="signer_mismatch",
            )
        if tx.gas_limit is None or tx.max_fee_per_gas is None:
            raise ValidationInputError(
                "Apply a fee quote before submitting", reason="missing_fee",
            )

        nonce = await self._network.get_nonce(tx.from_address)
        chain_id = await self._network.get_chain_id()
        return replace(tx, nonce=nonce, chain_id=chain_id)

    async def submit(
        self,
        tx: SponsoredTransaction,
        timeout_seconds: Optional[float] = None,
    ) -> TxReceipt:
        """
        Sign and send ``tx`` once, then wait for finality.

        Raises:
            SubmissionRejected: Validator rejected the transaction
            InsufficientFunding: Paymaster cannot cover the fee
            ExecutionReverted: Included but the wrapped call reverted
            SubmissionTimeout: Not final within ``timeout_seconds``
        """
        prepared = await self.prepare(tx)
        signed = self._signer.sign_transaction(prepared)
        raw = signed.serialize()

        paymaster = signed.paymaster_params.paymaster if signed.paymaster_params else None
        mode = signed.paymaster_params.mode if signed.paymaster_params else None
        mode_name = mode.value if mode else None

        async with self._flow_logger.operation_context(
            OperationType.SUBMISSION, self._network.name, mode=mode_name, paymaster=paymaster,
        ) as op:
            try:
                tx_hash = await self._network.send_raw_transaction(raw)
            except RPCError as e:
                error = classify_rpc_error(
                    str(e), stage="submit", mode=mode_name,
                    details={"code": e.code, "paymaster": paymaster},
                )
                self._flow_logger.log_transaction_failed(None, str(error), error.reason)
                raise error from e
            op.metadata["tx_hash"] = tx_hash

        expected_hash = signed.tx_hash()
        if tx_hash.lower() != expected_hash.lower():
            logger.warning(f"Node returned hash {tx_hash}, locally computed {expected_hash}")

        self._flow_logger.log_transaction_submitted(
            tx_hash=tx_hash,
            network=self._network.name,
            from_address=signed.from_address,
            to_address=signed.to,
            paymaster=paymaster,
            mode=mode_name,
            nonce=int(signed.nonce or 0),
            gas_limit=int(signed.gas_limit or 0),
            max_fee_per_gas=int(signed.max_fee_per_gas or 0),
        )

        timeout = self.confirmation_timeout if timeout_seconds is None else timeout_seconds
        async with self._flow_logger.operation_context(
            OperationType.CONFIRMATION, self._network.name, tx_hash=tx_hash,
        ):
            receipt = await self.wait_for_receipt(tx_hash, timeout, paymaster=paymaster, mode=mode)

        if not receipt.succeeded:
            reason = receipt.revert_reason or "execution reverted"
            self._flow_logger.log_transaction_failed(tx_hash, "execution reverted", reason)
            raise ExecutionReverted(
                f"Transaction {tx_hash} reverted: {reason}",
                tx_hash=tx_hash, mode=mode_name, reason=reason,
                details=receipt.to_dict(),
            )

        self._flow_logger.log_transaction_confirmed(
            tx_hash, receipt.block_number, receipt.gas_used, receipt.fee_wei,
        )
        return receipt

    async def wait_for_receipt(
        self,
        tx_hash: str,
        timeout_seconds: float,
        paymaster: Optional[str] = None,
        mode: Optional[SponsorshipMode] = None,
    ) -> TxReceipt:
        """
        Poll until ``tx_hash`` has the required confirmations.

        The deadline covers the RPC calls as well as the sleeps; a timeout of
        zero checks once. Node and transport failures while polling count as
        "not yet". On expiry ``SubmissionTimeout`` carries the hash and is
        chained from the last such failure.
        """
        poll_seconds = self.poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        last_error: Optional[Exception] = None
        first = True

        while True:
            remaining = deadline - loop.time()
            if not first and remaining <= 0:
                self._flow_logger.log_transaction_failed(tx_hash, "timeout")
                raise SubmissionTimeout(
                    tx_hash, timeout_seconds,
                    mode=mode.value if mode else None,
                    details={"last_error": str(last_error)} if last_error else None,
                ) from last_error
            first = False

            try:
                receipt = await asyncio.wait_for(
                    self._final_receipt(tx_hash, paymaster, mode),
                    timeout=remaining if remaining > 0 else None,
                )
            except asyncio.TimeoutError:
                receipt = None
            except (RPCError, AllEndpointsFailedError) as e:
                logger.warning(f"Receipt poll for {tx_hash} failed, still waiting: {e}")
                last_error = e
                receipt = None

            if receipt is not None:
                return receipt

            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(poll_seconds, remaining))

    async def _final_receipt(
        self,
        tx_hash: str,
        paymaster: Optional[str],
        mode: Optional[SponsorshipMode],
    ) -> Optional[TxReceipt]:
        data = await self._network.get_transaction_receipt(tx_hash)
        if not data:
            return None
        receipt = TxReceipt.from_rpc(data, paymaster=paymaster, mode=mode)
        head = await self._network.get_block_number()
        if head - receipt.block_number + 1 >= self.confirmations_required:
            return receipt
        return None
