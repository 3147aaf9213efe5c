"""
Structured logging for sponsored transactions.

Features:
- Operation context tracking (estimate, submit, confirm, verify)
- Sponsored transaction lifecycle logging
- Optional JSON-lines audit trail
- Address masking
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from .config import LoggingConfig

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Stages of a sponsored transaction."""
    FEE_ESTIMATION = "fee_estimation"
    FUNDING_CHECK = "funding_check"
    SUBMISSION = "submission"
    CONFIRMATION = "confirmation"
    VERIFICATION = "verification"
    FLOW = "flow"


@dataclass
class OperationContext:
    operation_id: str
    operation_type: OperationType
    network: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "network": self.network,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class SponsoredTransactionLog:
    """Lifecycle record of one submitted transaction."""
    tx_hash: str
    network: str
    from_address: str
    to_address: str
    paymaster: Optional[str]
    mode: Optional[str]
    nonce: int
    gas_limit: int
    max_fee_per_gas: int
    submitted_at: datetime
    status: str = "submitted"
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    fee_wei: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self, mask_addresses: bool = False) -> Dict[str, Any]:
        def show(address: Optional[str]) -> Optional[str]:
            return mask_address(address) if (mask_addresses and address) else address

        return {
            "tx_hash": self.tx_hash,
            "network": self.network,
            "from_address": show(self.from_address),
            "to_address": show(self.to_address),
            "paymaster": show(self.paymaster),
            "mode": self.mode,
            "nonce": self.nonce,
            "gas_limit": self.gas_limit,
            "max_fee_per_gas": self.max_fee_per_gas,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "fee_wei": self.fee_wei,
            "error": self.error,
        }


def mask_address(address: str) -> str:
    """Keep the first 6 and last 4 characters of an address."""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class FlowLogger:
    """Logger shared by the estimator, submitter and verifier of one flow."""

    def __init__(self, name: str = "paymaster_flows", config: Optional[LoggingConfig] = None):
        self._logger = logging.getLogger(name)
        self._config = config or LoggingConfig()
        self._operation_counter = 0
        self._transactions: Dict[str, SponsoredTransactionLog] = {}

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        return f"op_{int(time.time() * 1000)}_{self._operation_counter}"

    @staticmethod
    def _get_level(level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def _show(self, address: Optional[str]) -> str:
        if not address:
            return str(address)
        return mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        network: str,
        **metadata: Any,
    ) -> AsyncIterator[OperationContext]:
        """
        Track one stage of a flow.

        Usage:
            async with flow_logger.operation_context(OperationType.SUBMISSION, "local") as ctx:
                ctx.metadata["tx_hash"] = tx_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            network=network,
            metadata=metadata,
        )
        self._logger.debug(f"Starting {operation_type.value} on {network}")

        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=f"{type(e).__name__}: {e}")
            raise
        finally:
            level = (
                self._get_level(self._config.operation_level)
                if ctx.success
                else self._get_level(self._config.error_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {network} in {ctx.duration_ms or 0:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_fee_quote(self, network: str, mode: Optional[str], gas_limit: int,
                      gas_price: int, fee_wei: int) -> None:
        if not self._config.log_fee_quotes:
            return
        self._logger.info(
            f"Fee quote on {network} ({mode}): gas_limit={gas_limit} "
            f"gas_price={gas_price} fee={fee_wei} wei"
        )

    def log_transaction_submitted(
        self,
        tx_hash: str,
        network: str,
        from_address: str,
        to_address: str,
        paymaster: Optional[str],
        mode: Optional[str],
        nonce: int,
        gas_limit: int,
        max_fee_per_gas: int,
    ) -> None:
        entry = SponsoredTransactionLog(
            tx_hash=tx_hash,
            network=network,
            from_address=from_address,
            to_address=to_address,
            paymaster=paymaster,
            mode=mode,
            nonce=nonce,
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee_per_gas,
            submitted_at=datetime.now(timezone.utc),
        )
        self._transactions[tx_hash] = entry
        self._logger.log(
            self._get_level(self._config.operation_level),
            f"Sponsored transaction submitted: {tx_hash} on {network} "
            f"from {self._show(from_address)} via paymaster {self._show(paymaster)}",
            extra={"transaction": entry.to_dict(self._config.mask_addresses)},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_submitted", entry.to_dict())

    def log_transaction_confirmed(self, tx_hash: str, block_number: int,
                                  gas_used: int, fee_wei: int) -> None:
        entry = self._transactions.get(tx_hash)
        if entry is not None:
            entry.status = "confirmed"
            entry.block_number = block_number
            entry.gas_used = gas_used
            entry.fee_wei = fee_wei

        self._logger.log(
            self._get_level(self._config.operation_level),
            f"Transaction confirmed: {tx_hash} in block {block_number}, fee {fee_wei} wei",
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_confirmed", {
                "tx_hash": tx_hash,
                "block_number": block_number,
                "gas_used": gas_used,
                "fee_wei": fee_wei,
            })

    def log_transaction_failed(self, tx_hash: Optional[str], error: str,
                               revert_reason: Optional[str] = None) -> None:
        entry = self._transactions.get(tx_hash) if tx_hash else None
        if entry is not None:
            entry.status = "failed"
            entry.error = error

        self._logger.log(
            self._get_level(self._config.error_level),
            f"Transaction failed: {tx_hash} - {error}"
            + (f" (revert: {revert_reason})" if revert_reason else ""),
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_failed", {
                "tx_hash": tx_hash,
                "error": error,
                "revert_reason": revert_reason,
            })

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }
        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(f"AUDIT: {event_type}", extra={"audit": audit_entry})

    def get_transaction_metrics(self) -> Dict[str, Any]:
        statuses: Dict[str, int] = {}
        for entry in self._transactions.values():
            statuses[entry.status] = statuses.get(entry.status, 0) + 1
        return {"total_transactions": len(self._transactions), "status_breakdown": statuses}


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = (
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
                '"name": "%(name)s", "message": "%(message)s"}'
            )
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(level=getattr(logging, level.upper()), format=format_string)

    logging.getLogger("paymaster_flows").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
