"""
In-process zkSync-style rollup.

Accepts the same signed 0x71 transactions a live node does, runs paymaster
validation through ``SponsorshipValidation`` and executes calls against a few
mock contracts. Used by tests and by the ``--local`` mode of the CLI.

Execution is atomic: state is snapshotted before validation side effects
(allowance auto-approval, token pulls, fee pre-charge) and restored when the
wrapped call reverts, so a reverted transaction leaves every balance as it was.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address
from web3 import Web3

from .config import DEFAULT_GAS_PER_PUBDATA_LIMIT
from .encoding import ApprovalBasedParams, decode_paymaster_input
from .errors import UnsupportedPaymasterFlow
from .rpc_client import RPCError, SponsorshipNetwork
from .signer import recover_sender
from .transaction import SponsoredTransaction
from .validator import SponsorshipPolicy, SponsorshipValidation, ValidationContext

logger = logging.getLogger(__name__)

LOCAL_CHAIN_ID = 270
DEFAULT_LOCAL_GAS_PRICE = 250_000_000  # 0.25 gwei

BOOTLOADER_ADDRESS = "0x0000000000000000000000000000000000008001"

INTRINSIC_GAS = 21_000
ZERO_BYTE_GAS = 4
NONZERO_BYTE_GAS = 16
LOOP_ITERATION_GAS = 250


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def _arg_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:-1]
    return [t for t in inner.split(",") if t]


def _calldata_gas(data: bytes) -> int:
    zeros = data.count(0)
    return zeros * ZERO_BYTE_GAS + (len(data) - zeros) * NONZERO_BYTE_GAS


def _validation_failure(reason: str) -> str:
    return f"failed to validate the transaction. reason: Validation revert: Paymaster validation error: {reason}"


class ContractRevert(Exception):
    """A mock contract reverted."""


@dataclass
class CallContext:
    sender: str
    value: int = 0
    gas_used: int = 0

    def use_gas(self, amount: int) -> None:
        self.gas_used += amount


class LocalContract:
    """
    Base for mock contracts.

    ``FUNCTIONS`` maps an ABI signature to ``(method name, base gas)``; the
    method receives the call context and the decoded arguments and returns
    ABI-encoded return data.
    """

    kind = "contract"
    FUNCTIONS: Dict[str, Tuple[str, int]] = {}
    _selectors: Dict[bytes, Tuple[str, List[str], str, int]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._selectors = {
            _selector(sig): (sig, _arg_types(sig), method, gas)
            for sig, (method, gas) in cls.FUNCTIONS.items()
        }

    def __init__(self, address: str):
        self.address = address

    def execute(self, call: CallContext, calldata: bytes) -> bytes:
        if len(calldata) < 4:
            raise ContractRevert("function selector was not recognized and there's no fallback function")
        entry = self._selectors.get(bytes(calldata[:4]))
        if entry is None:
            raise ContractRevert(f"unknown function selector 0x{bytes(calldata[:4]).hex()}")

        signature, types, method, base_gas = entry
        try:
            args = abi_decode(types, bytes(calldata[4:])) if types else ()
        except DecodingError as e:
            raise ContractRevert(f"invalid calldata for {signature}") from e

        call.use_gas(base_gas + _calldata_gas(calldata))
        return getattr(self, method)(call, *args) or b""


class MockERC20(LocalContract):
    kind = "erc20"
    FUNCTIONS = {
        "mint(address,uint256)": ("_mint", 45_000),
        "approve(address,uint256)": ("_approve", 26_000),
        "transfer(address,uint256)": ("_transfer", 30_000),
        "transferFrom(address,address,uint256)": ("_transfer_from", 35_000),
        "balanceOf(address)": ("_balance_of", 2_500),
        "allowance(address,address)": ("_allowance", 2_500),
        "totalSupply()": ("_total_supply", 2_000),
        "decimals()": ("_decimals", 500),
    }

    def __init__(self, address: str, name: str = "MyToken", symbol: str = "MyToken", decimals: int = 18):
        super().__init__(address)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.total_supply = 0
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}

    def balance(self, owner: str) -> int:
        return self.balances.get(to_checksum_address(owner), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((to_checksum_address(owner), to_checksum_address(spender)), 0)

    def mint(self, to: str, amount: int) -> None:
        to = to_checksum_address(to)
        self.balances[to] = self.balances.get(to, 0) + amount
        self.total_supply += amount

    def approve(self, owner: str, spender: str, amount: int) -> None:
        self.allowances[(to_checksum_address(owner), to_checksum_address(spender))] = amount

    def move(self, owner: str, to: str, amount: int) -> None:
        owner, to = to_checksum_address(owner), to_checksum_address(to)
        if self.balances.get(owner, 0) < amount:
            raise ContractRevert("ERC20: transfer amount exceeds balance")
        self.balances[owner] -= amount
        self.balances[to] = self.balances.get(to, 0) + amount

    def pull(self, spender: str, owner: str, to: str, amount: int) -> None:
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise ContractRevert("ERC20: insufficient allowance")
        self.move(owner, to, amount)
        self.approve(owner, spender, allowed - amount)

    def _mint(self, call: CallContext, to: str, amount: int) -> bytes:
        self.mint(to, amount)
        return b""

    def _approve(self, call: CallContext, spender: str, amount: int) -> bytes:
        self.approve(call.sender, spender, amount)
        return abi_encode(["bool"], [True])

    def _transfer(self, call: CallContext, to: str, amount: int) -> bytes:
        self.move(call.sender, to, amount)
        return abi_encode(["bool"], [True])

    def _transfer_from(self, call: CallContext, owner: str, to: str, amount: int) -> bytes:
        self.pull(call.sender, owner, to, amount)
        return abi_encode(["bool"], [True])

    def _balance_of(self, call: CallContext, owner: str) -> bytes:
        return abi_encode(["uint256"], [self.balance(owner)])

    def _allowance(self, call: CallContext, owner: str, spender: str) -> bytes:
        return abi_encode(["uint256"], [self.allowance(owner, spender)])

    def _total_supply(self, call: CallContext) -> bytes:
        return abi_encode(["uint256"], [self.total_supply])

    def _decimals(self, call: CallContext) -> bytes:
        return abi_encode(["uint8"], [self.decimals])


class MockERC721(LocalContract):
    kind = "erc721"
    FUNCTIONS = {
        "mint(address,string)": ("_mint", 60_000),
        "balanceOf(address)": ("_balance_of", 2_500),
        "ownerOf(uint256)": ("_owner_of", 2_500),
        "tokenName(uint256)": ("_token_name", 3_000),
    }

    def __init__(self, address: str, name: str = "InfinityStones"):
        super().__init__(address)
        self.name = name
        self.owners: Dict[int, str] = {}
        self.token_names: Dict[int, str] = {}
        self.next_token_id = 0

    def balance(self, owner: str) -> int:
        owner = to_checksum_address(owner)
        return sum(1 for holder in self.owners.values() if holder == owner)

    def mint(self, to: str, token_name: str) -> int:
        token_id = self.next_token_id
        self.next_token_id += 1
        self.owners[token_id] = to_checksum_address(to)
        self.token_names[token_id] = token_name
        return token_id

    def _mint(self, call: CallContext, to: str, token_name: str) -> bytes:
        return abi_encode(["uint256"], [self.mint(to, token_name)])

    def _balance_of(self, call: CallContext, owner: str) -> bytes:
        return abi_encode(["uint256"], [self.balance(owner)])

    def _owner_of(self, call: CallContext, token_id: int) -> bytes:
        if token_id not in self.owners:
            raise ContractRevert("ERC721: invalid token ID")
        return abi_encode(["address"], [self.owners[token_id]])

    def _token_name(self, call: CallContext, token_id: int) -> bytes:
        if token_id not in self.token_names:
            raise ContractRevert("ERC721: invalid token ID")
        return abi_encode(["string"], [self.token_names[token_id]])


class TestLoop(LocalContract):
    """Burns gas proportional to ``loop_max`` on every ``loop()``."""

    __test__ = False  # not a pytest test class

    kind = "loop"
    FUNCTIONS = {
        "loop()": ("_loop", 5_000),
        "setName(string)": ("_set_name", 20_000),
        "setLoopMax(uint256)": ("_set_loop_max", 20_000),
        "name()": ("_name", 2_000),
        "loopMax()": ("_loop_max", 2_000),
        "counter()": ("_counter", 2_000),
    }

    def __init__(self, address: str, name: str = "Before Loop", loop_max: int = 1000):
        super().__init__(address)
        self.name = name
        self.loop_max = loop_max
        self.counter = 0

    def _loop(self, call: CallContext) -> bytes:
        call.use_gas(self.loop_max * LOOP_ITERATION_GAS)
        self.counter += self.loop_max
        return b""

    def _set_name(self, call: CallContext, name: str) -> bytes:
        self.name = name
        return b""

    def _set_loop_max(self, call: CallContext, loop_max: int) -> bytes:
        self.loop_max = loop_max
        return b""

    def _name(self, call: CallContext) -> bytes:
        return abi_encode(["string"], [self.name])

    def _loop_max(self, call: CallContext) -> bytes:
        return abi_encode(["uint256"], [self.loop_max])

    def _counter(self, call: CallContext) -> bytes:
        return abi_encode(["uint256"], [self.counter])


@dataclass
class _ChainState:
    balances: Dict[str, int] = field(default_factory=dict)
    nonces: Dict[str, int] = field(default_factory=dict)
    contracts: Dict[str, LocalContract] = field(default_factory=dict)


@dataclass
class _Execution:
    status: int
    gas_used: int
    fee_wei: int
    payer: str
    validation: Optional[SponsorshipValidation] = None
    context: Optional[ValidationContext] = None
    revert_reason: Optional[str] = None


class LocalRollup(SponsorshipNetwork):
    """A single-sequencer rollup living in memory."""

    name = "local"

    def __init__(
        self,
        chain_id: int = LOCAL_CHAIN_ID,
        gas_price: int = DEFAULT_LOCAL_GAS_PRICE,
        gas_per_pubdata_floor: int = DEFAULT_GAS_PER_PUBDATA_LIMIT,
        auto_mine: bool = True,
        auto_approve_paymaster: bool = False,
    ):
        self.chain_id = chain_id
        self.gas_price = gas_price
        self.gas_per_pubdata_floor = gas_per_pubdata_floor
        self.auto_mine = auto_mine
        self.auto_approve_paymaster = auto_approve_paymaster

        self._state = _ChainState()
        self._paymasters: Dict[str, SponsorshipPolicy] = {}
        self._receipts: Dict[str, Dict[str, Any]] = {}
        self._pending: List[Tuple[str, SponsoredTransaction, str]] = []
        self._validations: Dict[str, SponsorshipValidation] = {}
        self._block_number = 0
        self._deploy_counter = 0

    # -- Operator-side setup ----------------------------------------------

    def _next_address(self) -> str:
        self._deploy_counter += 1
        digest = Web3.keccak(text=f"local-rollup:{self.chain_id}:{self._deploy_counter}")
        return to_checksum_address(digest[-20:])

    def _deploy(self, factory: Callable[[str], LocalContract]) -> str:
        address = self._next_address()
        contract = factory(address)
        self._state.contracts[address] = contract
        logger.info(f"Deployed {contract.kind} at {address}")
        return address

    def fund(self, address: str, amount_wei: int) -> None:
        address = to_checksum_address(address)
        self._state.balances[address] = self._state.balances.get(address, 0) + amount_wei

    def deploy_token(self, name: str = "MyToken", symbol: str = "MyToken", decimals: int = 18) -> str:
        return self._deploy(lambda addr: MockERC20(addr, name, symbol, decimals))

    def deploy_collection(self, name: str = "InfinityStones") -> str:
        return self._deploy(lambda addr: MockERC721(addr, name))

    def deploy_loop(self, name: str = "Before Loop", loop_max: int = 1000) -> str:
        return self._deploy(lambda addr: TestLoop(addr, name, loop_max))

    def deploy_paymaster(self, policy: SponsorshipPolicy, funding_wei: int = 0) -> str:
        address = self._next_address()
        self._paymasters[address] = policy
        if funding_wei:
            self.fund(address, funding_wei)
        logger.info(f"Deployed paymaster {type(policy).__name__} at {address} funded with {funding_wei} wei")
        return address

    def contract_at(self, address: str) -> LocalContract:
        address = to_checksum_address(address)
        if address not in self._state.contracts:
            raise KeyError(f"No contract at {address}")
        return self._state.contracts[address]

    def policy_of(self, paymaster: str) -> SponsorshipPolicy:
        return self._paymasters[to_checksum_address(paymaster)]

    def _erc20(self, token: str) -> MockERC20:
        contract = self._state.contracts.get(to_checksum_address(token))
        if not isinstance(contract, MockERC20):
            raise ContractRevert(f"{token} is not an ERC20 token")
        return contract

    def mint_tokens(self, token: str, to: str, amount: int) -> None:
        self._erc20(token).mint(to, amount)

    def mint_nft(self, collection: str, to: str, token_name: str) -> int:
        contract = self.contract_at(collection)
        if not isinstance(contract, MockERC721):
            raise TypeError(f"{collection} is not an ERC721 collection")
        return contract.mint(to, token_name)

    def approve(self, owner: str, token: str, spender: str, amount: int) -> None:
        self._erc20(token).approve(owner, spender, amount)

    def validation_of(self, tx_hash: str) -> SponsorshipValidation:
        return self._validations[tx_hash]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- State helpers ----------------------------------------------------

    def _snapshot(self) -> _ChainState:
        return copy.deepcopy(self._state)

    def _restore(self, snapshot: _ChainState) -> None:
        self._state = snapshot

    def _native_balance(self, address: str) -> int:
        return self._state.balances.get(to_checksum_address(address), 0)

    def _move_native(self, source: str, destination: str, amount: int) -> None:
        source, destination = to_checksum_address(source), to_checksum_address(destination)
        if self._state.balances.get(source, 0) < amount:
            raise ContractRevert("insufficient balance for transfer")
        self._state.balances[source] -= amount
        self._state.balances[destination] = self._state.balances.get(destination, 0) + amount

    def _token_balance(self, token: str, owner: str) -> int:
        contract = self._state.contracts.get(to_checksum_address(token))
        if isinstance(contract, (MockERC20, MockERC721)):
            return contract.balance(owner)
        return 0

    def _token_allowance(self, token: str, owner: str, spender: str) -> int:
        contract = self._state.contracts.get(to_checksum_address(token))
        if isinstance(contract, MockERC20):
            return contract.allowance(owner, spender)
        return 0

    def _nonce(self, address: str) -> int:
        return self._state.nonces.get(to_checksum_address(address), 0)

    # -- Transaction processing -------------------------------------------

    def _validate_sponsorship(
        self, tx: SponsoredTransaction, sender: str, tx_hash: str
    ) -> Tuple[SponsorshipValidation, ValidationContext]:
        params = tx.paymaster_params
        if params is None:
            raise RPCError(_validation_failure("transaction carries no paymaster params"))
        paymaster = to_checksum_address(params.paymaster)
        policy = self._paymasters.get(paymaster)
        if policy is None:
            raise RPCError(_validation_failure(f"{paymaster} is not a paymaster"))

        try:
            mode, mode_params = decode_paymaster_input(params.paymaster_input)
        except UnsupportedPaymasterFlow:
            raise RPCError(_validation_failure("Unsupported paymaster flow"))

        # Default accounts approve the paymaster while preparing for it
        if self.auto_approve_paymaster and isinstance(mode_params, ApprovalBasedParams):
            contract = self._state.contracts.get(mode_params.token)
            if isinstance(contract, MockERC20):
                contract.approve(sender, paymaster, mode_params.minimal_allowance)

        ctx = ValidationContext(
            sender=sender,
            paymaster=paymaster,
            tx=tx,
            mode=mode,
            params=mode_params,
            paymaster_balance_wei=self._native_balance(paymaster),
            allowance_of=self._token_allowance,
            balance_of=self._token_balance,
        )
        validation = SponsorshipValidation(tx_hash, policy)
        decision = validation.validate(ctx)
        if not decision.accepted:
            raise RPCError(_validation_failure(decision.reason or "rejected by paymaster"))

        pull = policy.token_pull(ctx)
        if pull is not None:
            token, amount = pull
            try:
                self._erc20(token).pull(paymaster, sender, paymaster, amount)
            except ContractRevert as e:
                raise RPCError(_validation_failure(str(e)))
        return validation, ctx

    def _execute_call(self, tx: SponsoredTransaction, call: CallContext) -> bytes:
        if tx.value:
            self._move_native(call.sender, tx.to, tx.value)
        contract = self._state.contracts.get(to_checksum_address(tx.to))
        if contract is None or not tx.data:
            return b""
        return contract.execute(call, tx.data)

    def _run(self, tx: SponsoredTransaction, sender: str, tx_hash: str, *, simulate: bool) -> _Execution:
        """Validate and execute ``tx`` against live state. Callers snapshot."""
        if tx.gas_per_pubdata_limit < self.gas_per_pubdata_floor:
            raise RPCError(
                f"gasPerPubdataByteLimit {tx.gas_per_pubdata_limit} is below the floor {self.gas_per_pubdata_floor}"
            )

        validation: Optional[SponsorshipValidation] = None
        ctx: Optional[ValidationContext] = None
        validation_gas = 0
        payer = sender
        if tx.paymaster_params is not None:
            validation, ctx = self._validate_sponsorship(tx, sender, tx_hash)
            validation_gas = validation.policy.validation_gas
            payer = ctx.paymaster
            validation_gas += _calldata_gas(tx.paymaster_params.paymaster_input)
        elif not simulate and self._native_balance(sender) < tx.max_cost_wei + tx.value:
            raise RPCError("insufficient funds for gas * price + value")

        max_cost = 0 if simulate else tx.max_cost_wei
        if max_cost:
            self._move_native(payer, BOOTLOADER_ADDRESS, max_cost)
        if validation is not None and not simulate:
            validation.start_execution()

        call = CallContext(sender=sender, value=tx.value)
        try:
            self._execute_call(tx, call)
            gas_used = INTRINSIC_GAS + validation_gas + call.gas_used
            if tx.gas_limit is not None and gas_used > tx.gas_limit:
                raise ContractRevert("out of gas")
        except ContractRevert as e:
            gas_used = INTRINSIC_GAS + validation_gas + call.gas_used
            if validation is not None and not simulate:
                validation.abort(str(e))
            return _Execution(status=0, gas_used=gas_used, fee_wei=0, payer=payer,
                              validation=validation, context=ctx, revert_reason=str(e))

        fee = gas_used * self.gas_price
        if max_cost:
            self._move_native(BOOTLOADER_ADDRESS, payer, max_cost - fee)
        return _Execution(status=1, gas_used=gas_used, fee_wei=fee, payer=payer,
                          validation=validation, context=ctx)

    def _admit(self, tx: SponsoredTransaction, sender: str, tx_hash: str) -> None:
        """Checks a node performs before accepting a transaction into its mempool."""
        if tx.chain_id != self.chain_id:
            raise RPCError(f"invalid chain id {tx.chain_id}, expected {self.chain_id}")
        if tx_hash in self._receipts or any(h == tx_hash for h, _, _ in self._pending):
            raise RPCError(f"known transaction: {tx_hash}")
        expected_nonce = self._nonce(sender) + sum(1 for _, _, s in self._pending if s == sender)
        if tx.nonce != expected_nonce:
            raise RPCError(f"nonce mismatch: expected {expected_nonce}, got {tx.nonce}")
        if (tx.max_fee_per_gas or 0) < self.gas_price:
            raise RPCError(
                f"max fee per gas {tx.max_fee_per_gas} less than block base fee {self.gas_price}"
            )

    def _mine(self, tx_hash: str, tx: SponsoredTransaction, sender: str) -> Dict[str, Any]:
        snapshot = self._snapshot()
        try:
            execution = self._run(tx, sender, tx_hash, simulate=False)
        except RPCError:
            self._restore(snapshot)
            raise

        if execution.status == 0:
            self._restore(snapshot)
        elif execution.validation is not None and execution.context is not None:
            execution.validation.settle(execution.context, execution.fee_wei)

        self._state.nonces[sender] = self._nonce(sender) + 1
        self._block_number += 1
        if execution.validation is not None:
            self._validations[tx_hash] = execution.validation

        receipt: Dict[str, Any] = {
            "transactionHash": tx_hash,
            "blockNumber": hex(self._block_number),
            "status": hex(execution.status),
            "from": sender,
            "to": tx.to,
            "gasUsed": hex(execution.gas_used),
            "effectiveGasPrice": hex(self.gas_price),
            "logs": [],
        }
        if execution.revert_reason:
            receipt["revertReason"] = execution.revert_reason
        self._receipts[tx_hash] = receipt
        logger.debug(
            f"Mined {tx_hash} in block {self._block_number} status={execution.status} "
            f"gas_used={execution.gas_used} fee={execution.fee_wei} payer={execution.payer}"
        )
        return receipt

    def mine(self) -> List[str]:
        """Execute every pending transaction in arrival order."""
        mined = []
        pending, self._pending = self._pending, []
        for tx_hash, tx, sender in pending:
            try:
                self._mine(tx_hash, tx, sender)
                mined.append(tx_hash)
            except RPCError as e:
                logger.warning(f"Dropped pending transaction {tx_hash}: {e}")
        return mined

    # -- SponsorshipNetwork -----------------------------------------------

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_block_number(self) -> int:
        return self._block_number

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        if token is None:
            return self._native_balance(address)
        return self._token_balance(token, address)

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        return self._token_allowance(token, owner, spender)

    async def get_nonce(self, address: str) -> int:
        return self._nonce(address)

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        contract = self._state.contracts.get(to_checksum_address(tx["to"]))
        if contract is None:
            return "0x"
        data = tx.get("data", "0x")
        calldata = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        sender = to_checksum_address(tx.get("from") or "0x" + "00" * 20)

        snapshot = self._snapshot()
        try:
            result = contract.execute(CallContext(sender=sender), calldata)
        except ContractRevert as e:
            raise RPCError(f"execution reverted: {e}", code=3)
        finally:
            self._restore(snapshot)
        return "0x" + result.hex()

    async def estimate_gas(self, tx: SponsoredTransaction) -> int:
        sender = to_checksum_address(tx.from_address)
        snapshot = self._snapshot()
        try:
            execution = self._run(tx, sender, "estimate", simulate=True)
        finally:
            self._restore(snapshot)
        if execution.status == 0:
            raise RPCError(f"execution reverted: {execution.revert_reason}", code=3)
        return execution.gas_used

    async def send_raw_transaction(self, raw_tx: str) -> str:
        try:
            tx = SponsoredTransaction.parse(raw_tx)
            sender = recover_sender(tx)
        except (ValueError, TypeError) as e:
            raise RPCError(f"failed to parse transaction: {e}")
        if sender != tx.from_address:
            raise RPCError(f"invalid signature: recovered {sender}, transaction from {tx.from_address}")

        tx_hash = tx.tx_hash()
        self._admit(tx, sender, tx_hash)

        if self.auto_mine:
            self._mine(tx_hash, tx, sender)
            return tx_hash

        # Validate now so rejections surface at submission, execute on mine()
        snapshot = self._snapshot()
        try:
            self._run(tx, sender, tx_hash, simulate=False)
        finally:
            self._restore(snapshot)
        self._pending.append((tx_hash, tx, sender))
        return tx_hash

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self._receipts.get(tx_hash)
