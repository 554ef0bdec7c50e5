"""
DevChain - In-Process Auto-Mining Chain

A single-node chain for local runs and tests. Plays the role a Hardhat node
plays for a contract test suite: funded accounts with known keys, one block
per transaction, time travel and snapshots.

Design:
- World state (balances, nonces, code, contract models) is plain Python,
  deep-copied for per-transaction rollback and evm_snapshot
- Transactions are accepted via send_transaction (unlocked accounts) or
  send_raw_transaction (signed legacy / EIP-2930 / EIP-1559 envelopes)
- A reverted or out-of-gas transaction is still mined, with status 0,
  its nonce consumed and its gas charged (geth semantics)
- Contract behaviour lives in devchain/models.py
"""

import copy
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

import rlp
from rlp.exceptions import DecodingError as RLPDecodingError
from eth_abi import encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from core.abi import ZERO_ADDRESS, abi_signature
from devchain.models import (
    ContractModel,
    Revert,
    MODELS,
    eip1167_code,
    model_for_creation_code,
)

logger = logging.getLogger("opfactory.devchain")


# ============================================================
# CONSTANTS
# ============================================================

DEFAULT_CHAIN_ID = 31337
DEFAULT_ACCOUNT_COUNT = 10
DEFAULT_BALANCE_WEI = 10_000 * 10**18
DEFAULT_GAS_PRICE_WEI = 1_000_000_000  # 1 gwei
BLOCK_GAS_LIMIT = 30_000_000

# Gas schedule (coarse; enough for estimate → buffer → send to behave)
TX_BASE_GAS = 21_000
TX_CREATE_GAS = 32_000
CALLDATA_ZERO_GAS = 4
CALLDATA_NONZERO_GAS = 16
CALL_GAS = 25_000
LOG_GAS = 1_875
CREATE_GAS = 32_000
CODE_DEPOSIT_GAS_PER_BYTE = 200

EMPTY_BLOOM = b"\x00" * 256


class RPCError(Exception):
    """Request rejected before execution (bad nonce, no funds, unknown account…)."""

    def __init__(self, message: str, code: int = -32000, data: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class OutOfGas(Exception):
    pass


# ============================================================
# STATE
# ============================================================

@dataclass
class WorldState:
    balances: dict[str, int] = field(default_factory=dict)
    nonces: dict[str, int] = field(default_factory=dict)
    code: dict[str, bytes] = field(default_factory=dict)
    contracts: dict[str, ContractModel] = field(default_factory=dict)


@dataclass
class Block:
    number: int
    hash: bytes
    parent_hash: bytes
    timestamp: int
    miner: str = ZERO_ADDRESS
    gas_limit: int = BLOCK_GAS_LIMIT
    gas_used: int = 0
    transactions: list[bytes] = field(default_factory=list)


@dataclass
class Transaction:
    hash: bytes
    sender: str
    nonce: int
    to: Optional[str]
    value: int
    data: bytes
    gas: int
    gas_price: int
    chain_id: int
    type: int = 0
    v: int = 0
    r: int = 0
    s: int = 0
    block_number: int = 0
    block_hash: bytes = b""
    index: int = 0
    max_fee_per_gas: Optional[int] = None


@dataclass
class Log:
    address: str
    topics: list[bytes]
    data: bytes
    log_index: int = 0
    block_number: int = 0
    block_hash: bytes = b""
    transaction_hash: bytes = b""
    transaction_index: int = 0


@dataclass
class Receipt:
    transaction_hash: bytes
    sender: str
    to: Optional[str]
    status: int
    gas_used: int
    effective_gas_price: int
    block_number: int
    block_hash: bytes
    contract_address: Optional[str] = None
    logs: list[Log] = field(default_factory=list)
    transaction_index: int = 0
    type: int = 0
    revert_reason: str = ""


# ============================================================
# EXECUTION
# ============================================================

class Execution:
    """One transaction (or eth_call) in flight: gas meter + emitted logs."""

    def __init__(self, chain: "DevChain", origin: str, gas_limit: int, timestamp: int):
        self.chain = chain
        self.origin = origin
        self.gas_limit = gas_limit
        self.gas_used = 0
        self.timestamp = timestamp
        self.logs: list[Log] = []

    def use_gas(self, amount: int) -> None:
        self.gas_used += amount
        if self.gas_used > self.gas_limit:
            raise OutOfGas(f"out of gas: used {self.gas_used} > limit {self.gas_limit}")


class Message:
    """msg.* for a model function, plus the chain operations a contract can perform."""

    def __init__(self, execution: Execution, sender: str, this: str, value: int = 0):
        self.execution = execution
        self.sender = sender
        self.this = this
        self.value = value

    @property
    def timestamp(self) -> int:
        return self.execution.timestamp

    @property
    def origin(self) -> str:
        return self.execution.origin

    def emit(self, event_name: str, **fields) -> None:
        model = self.execution.chain.world.contracts[self.this]
        event = model.event(event_name)

        topics = [keccak(text=abi_signature(event))]
        data_types, data_values = [], []
        for param in event["inputs"]:
            value = fields[param["name"]]
            if param.get("indexed"):
                topics.append(encode([param["type"]], [value]))
            else:
                data_types.append(param["type"])
                data_values.append(value)

        self.execution.use_gas(LOG_GAS * len(topics))
        self.execution.logs.append(Log(
            address=self.this,
            topics=topics,
            data=encode(data_types, data_values) if data_types else b"",
        ))

    def clone(self, implementation: str) -> str:
        """Deploy an EIP-1167 minimal proxy of implementation (CREATE from this contract)."""
        chain = self.execution.chain
        template = chain.world.contracts.get(implementation)
        if template is None:
            raise Revert("ERC1167: implementation has no code")

        address = chain._next_create_address(self.this)
        code = eip1167_code(implementation)
        self.execution.use_gas(CREATE_GAS + CODE_DEPOSIT_GAS_PER_BYTE * len(code))
        chain.world.code[address] = code
        chain.world.contracts[address] = type(template)(address)
        chain.world.nonces[address] = 1
        logger.debug(f"clone of {implementation} at {address}")
        return address

    def call(self, target: str, function_name: str, *args) -> bytes:
        """Internal message call from this contract, msg.sender = this."""
        chain = self.execution.chain
        model = chain.world.contracts.get(target)
        if model is None:
            raise Revert("Address: call to non-contract")

        entry = next(
            (e for e in model.functions().values() if e["name"] == function_name),
            None,
        )
        if entry is None:
            raise Revert(f"{model.NAME} has no function {function_name}")

        selector = keccak(text=abi_signature(entry))[:4]
        calldata = selector + encode([i["type"] for i in entry["inputs"]], list(args))
        self.execution.use_gas(CALL_GAS)
        return model.dispatch(Message(self.execution, self.this, target), calldata)


# ============================================================
# DEV CHAIN
# ============================================================

class DevChain:
    """
    Usage:
        chain = DevChain()
        w3 = Web3(DevChainProvider(chain))
        owner, controller = chain.accounts[:2]
    """

    def __init__(
        self,
        chain_id: int = DEFAULT_CHAIN_ID,
        account_count: int = DEFAULT_ACCOUNT_COUNT,
        balance_wei: int = DEFAULT_BALANCE_WEI,
        gas_price_wei: int = DEFAULT_GAS_PRICE_WEI,
        genesis_timestamp: Optional[int] = None,
    ):
        self.chain_id = chain_id
        self.gas_price = gas_price_wei

        self.private_keys: list[str] = []
        self.accounts: list[str] = []
        self.world = WorldState()
        for i in range(account_count):
            key = keccak(text=f"opfactory-devchain:{i}")
            address = Account.from_key(key).address
            self.private_keys.append("0x" + key.hex())
            self.accounts.append(address)
            self.world.balances[address] = balance_wei
            self.world.nonces[address] = 0

        self.blocks: list[Block] = []
        self.transactions: dict[bytes, Transaction] = {}
        self.receipts: dict[bytes, Receipt] = {}

        # Clock: block timestamp = max(parent + 1, wall + offset, floor)
        self._time_offset = 0
        self._time_floor = 0
        self._next_timestamp: Optional[int] = None

        self._snapshots: dict[int, tuple] = {}
        self._snapshot_counter = 0

        genesis_ts = genesis_timestamp if genesis_timestamp is not None else int(time.time())
        self._append_block([], 0, timestamp=genesis_ts)

        logger.info(
            f"DevChain ready: chain_id={chain_id} | accounts={account_count} | "
            f"genesis={self.blocks[0].hash.hex()[:16]}..."
        )

    # ============================================================
    # READS
    # ============================================================

    @property
    def latest_block(self) -> Block:
        return self.blocks[-1]

    @property
    def block_number(self) -> int:
        return self.latest_block.number

    def get_block(self, number: int) -> Optional[Block]:
        if 0 <= number < len(self.blocks):
            return self.blocks[number]
        return None

    def get_block_by_hash(self, block_hash: bytes) -> Optional[Block]:
        return next((b for b in self.blocks if b.hash == block_hash), None)

    def balance(self, address: str) -> int:
        return self.world.balances.get(to_checksum_address(address), 0)

    def nonce(self, address: str) -> int:
        return self.world.nonces.get(to_checksum_address(address), 0)

    def code(self, address: str) -> bytes:
        return self.world.code.get(to_checksum_address(address), b"")

    def contract_at(self, address: str) -> Optional[ContractModel]:
        return self.world.contracts.get(to_checksum_address(address))

    def private_key_for(self, address: str) -> Optional[str]:
        address = to_checksum_address(address)
        if address in self.accounts:
            return self.private_keys[self.accounts.index(address)]
        return None

    def receipt(self, tx_hash: bytes) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    def transaction(self, tx_hash: bytes) -> Optional[Transaction]:
        return self.transactions.get(tx_hash)

    def get_logs(
        self,
        from_block: int = 0,
        to_block: Optional[int] = None,
        address: Optional[list[str]] = None,
        topics: Optional[list] = None,
    ) -> list[Log]:
        """eth_getLogs filtering: address set + positional topic sets (None = wildcard)."""
        to_block = self.block_number if to_block is None else to_block
        wanted = {to_checksum_address(a) for a in address} if address else None
        matched = []
        for block in self.blocks[from_block:to_block + 1]:
            for tx_hash in block.transactions:
                for log in self.receipts[tx_hash].logs:
                    if wanted is not None and log.address not in wanted:
                        continue
                    if topics and not _topics_match(log.topics, topics):
                        continue
                    matched.append(log)
        return matched

    # ============================================================
    # CALLS (no state change)
    # ============================================================

    def call(self, tx: dict) -> bytes:
        """eth_call: execute against a throwaway copy of the world state."""
        saved = copy.deepcopy(self.world)
        try:
            receipt_status, output, _execution, error = self._execute(
                sender=tx.get("from") or ZERO_ADDRESS,
                to=tx.get("to"),
                value=tx.get("value", 0),
                data=tx.get("data", b""),
                gas=tx.get("gas", BLOCK_GAS_LIMIT),
                timestamp=self._peek_timestamp(),
            )
        finally:
            self.world = saved
        if error is not None:
            raise error
        return output

    def estimate_gas(self, tx: dict) -> int:
        saved = copy.deepcopy(self.world)
        try:
            _status, _output, execution, error = self._execute(
                sender=tx.get("from") or ZERO_ADDRESS,
                to=tx.get("to"),
                value=tx.get("value", 0),
                data=tx.get("data", b""),
                gas=BLOCK_GAS_LIMIT,
                timestamp=self._peek_timestamp(),
            )
        finally:
            self.world = saved
        if error is not None:
            raise error
        return execution.gas_used

    # ============================================================
    # TRANSACTIONS
    # ============================================================

    def send_transaction(self, tx: dict) -> bytes:
        """eth_sendTransaction from an unlocked dev account."""
        sender = to_checksum_address(tx["from"])
        if sender not in self.accounts:
            raise RPCError(f"unknown account {sender}")

        nonce = tx.get("nonce", self.nonce(sender))
        gas_price = tx.get("gasPrice", tx.get("maxFeePerGas", self.gas_price))
        to = to_checksum_address(tx["to"]) if tx.get("to") else None
        gas = tx.get("gas")
        if gas is None:
            gas = int(self.estimate_gas(tx) * 1.2)

        tx_hash = keccak(rlp.encode([
            nonce, gas_price, gas,
            bytes.fromhex(to[2:]) if to else b"",
            tx.get("value", 0), tx.get("data", b""),
            bytes.fromhex(sender[2:]),
        ]))
        transaction = Transaction(
            hash=tx_hash,
            sender=sender,
            nonce=nonce,
            to=to,
            value=tx.get("value", 0),
            data=tx.get("data", b""),
            gas=gas,
            gas_price=gas_price,
            chain_id=tx.get("chainId", self.chain_id),
            max_fee_per_gas=tx.get("maxFeePerGas"),
        )
        return self._apply(transaction)

    def send_raw_transaction(self, raw: bytes) -> bytes:
        """eth_sendRawTransaction for legacy, EIP-2930 (type 1) and EIP-1559 (type 2)."""
        try:
            sender = Account.recover_transaction(raw)
        except Exception as e:
            raise RPCError(f"invalid transaction signature: {e}")

        tx_type = raw[0] if raw[0] < 0x7F else 0
        try:
            fields = rlp.decode(raw[1:] if tx_type else raw)
        except RLPDecodingError as e:
            raise RPCError(f"rlp: {e}")
        as_int = _big_endian_int

        max_fee_per_gas = None
        if tx_type == 2:
            chain_id, nonce, priority_fee, max_fee, gas, to, value, data, _al, v, r, s = fields
            max_fee_per_gas = as_int(max_fee)
            gas_price = min(max_fee_per_gas, as_int(priority_fee))
            chain_id = as_int(chain_id)
        elif tx_type == 1:
            chain_id, nonce, gas_price, gas, to, value, data, _al, v, r, s = fields
            gas_price = as_int(gas_price)
            chain_id = as_int(chain_id)
        elif tx_type == 0:
            nonce, gas_price, gas, to, value, data, v, r, s = fields
            gas_price = as_int(gas_price)
            v_int = as_int(v)
            chain_id = (v_int - 35) // 2 if v_int >= 35 else self.chain_id
        else:
            raise RPCError(f"transaction type {tx_type} not supported")

        if chain_id != self.chain_id:
            raise RPCError(f"invalid chain id {chain_id} (expected {self.chain_id})")

        transaction = Transaction(
            hash=keccak(raw),
            sender=sender,
            nonce=as_int(nonce),
            to=to_checksum_address(to) if to else None,
            value=as_int(value),
            data=bytes(data),
            gas=as_int(gas),
            gas_price=gas_price,
            chain_id=chain_id,
            type=tx_type,
            v=as_int(v),
            r=as_int(r),
            s=as_int(s),
            max_fee_per_gas=max_fee_per_gas,
        )
        return self._apply(transaction)

    def _apply(self, tx: Transaction) -> bytes:
        """Validate, execute and mine a transaction into its own block."""
        if tx.hash in self.transactions:
            raise RPCError("already known")

        expected_nonce = self.nonce(tx.sender)
        if tx.nonce < expected_nonce:
            raise RPCError(f"nonce too low: next nonce {expected_nonce}, tx nonce {tx.nonce}")
        if tx.nonce > expected_nonce:
            raise RPCError(f"nonce too high: next nonce {expected_nonce}, tx nonce {tx.nonce}")
        if tx.gas > BLOCK_GAS_LIMIT:
            raise RPCError("exceeds block gas limit")

        # geth: balance >= gas * maxFeePerGas + value
        fee_cap = tx.max_fee_per_gas if tx.max_fee_per_gas is not None else tx.gas_price
        max_cost = tx.gas * fee_cap + tx.value
        if self.balance(tx.sender) < max_cost:
            raise RPCError("insufficient funds for gas * price + value")

        intrinsic = _intrinsic_gas(tx.data, tx.to is None)
        if tx.gas < intrinsic:
            raise RPCError(f"intrinsic gas too low: have {tx.gas}, want {intrinsic}")

        timestamp = self._take_timestamp()
        contract_address = None if tx.to else self._create_address(tx.sender, tx.nonce)

        status, _output, execution, error = self._execute(
            sender=tx.sender,
            to=tx.to,
            value=tx.value,
            data=tx.data,
            gas=tx.gas,
            timestamp=timestamp,
            nonce_bump=True,
        )

        gas_used = tx.gas if isinstance(error, OutOfGas) else execution.gas_used
        self.world.balances[tx.sender] = self.balance(tx.sender) - gas_used * tx.gas_price

        block = self._append_block([tx.hash], gas_used, timestamp=timestamp)
        tx.block_number = block.number
        tx.block_hash = block.hash
        self.transactions[tx.hash] = tx

        logs = execution.logs if status == 1 else []
        for i, log in enumerate(logs):
            log.log_index = i
            log.block_number = block.number
            log.block_hash = block.hash
            log.transaction_hash = tx.hash

        self.receipts[tx.hash] = Receipt(
            transaction_hash=tx.hash,
            sender=tx.sender,
            to=tx.to,
            status=status,
            gas_used=gas_used,
            effective_gas_price=tx.gas_price,
            block_number=block.number,
            block_hash=block.hash,
            contract_address=contract_address if status == 1 else None,
            logs=logs,
            type=tx.type,
            revert_reason=str(error) if error is not None else "",
        )

        if status == 1:
            logger.debug(f"tx {tx.hash.hex()[:16]}... mined in block {block.number} | gas={gas_used}")
        else:
            logger.info(f"tx {tx.hash.hex()[:16]}... FAILED in block {block.number}: {error}")
        return tx.hash

    def _execute(
        self,
        sender: str,
        to: Optional[str],
        value: int,
        data: bytes,
        gas: int,
        timestamp: int,
        nonce_bump: bool = False,
    ):
        """
        Run a message against self.world.

        Returns (status, output, execution, error). On failure the world is
        restored to its pre-execution state (nonce bump excepted).
        """
        sender = to_checksum_address(sender)
        creating = not to
        created_at = self._create_address(sender, self.nonce(sender)) if creating else None

        if nonce_bump:
            self.world.nonces[sender] = self.nonce(sender) + 1
        saved = copy.deepcopy(self.world)

        execution = Execution(self, sender, gas, timestamp)
        try:
            execution.use_gas(_intrinsic_gas(data, creating))
            if value:
                if self.balance(sender) < value:
                    raise Revert("insufficient balance for transfer")
                self.world.balances[sender] = self.balance(sender) - value

            if creating:
                output = self._create(execution, sender, created_at, data, value)
            else:
                to = to_checksum_address(to)
                self.world.balances[to] = self.balance(to) + value
                model = self.world.contracts.get(to)
                if model is None:
                    output = b""
                else:
                    execution.use_gas(CALL_GAS)
                    output = model.dispatch(Message(execution, sender, to, value), data)
            return 1, output, execution, None
        except (Revert, OutOfGas) as e:
            self.world = saved
            return 0, b"", execution, e

    def _create(self, execution: Execution, sender: str, address: str, data: bytes, value: int) -> bytes:
        matched = model_for_creation_code(data)
        if matched is None:
            raise Revert("devchain: unsupported creation code (only dev artifacts can be deployed)")
        cls, _constructor_args = matched

        code = cls.bytecode()
        execution.use_gas(CODE_DEPOSIT_GAS_PER_BYTE * len(code))
        model = cls(address)
        self.world.code[address] = code
        self.world.contracts[address] = model
        self.world.nonces[address] = 1
        self.world.balances[address] = self.balance(address) + value

        constructor = getattr(model, "constructor", None)
        if constructor is not None:
            constructor(Message(execution, sender, address, value))
        logger.debug(f"{cls.NAME} created at {address}")
        return code

    # ============================================================
    # ADDRESSES
    # ============================================================

    @staticmethod
    def _create_address(sender: str, nonce: int) -> str:
        """CREATE: keccak256(rlp([sender, nonce]))[12:]"""
        raw = rlp.encode([bytes.fromhex(sender[2:]), nonce])
        return to_checksum_address("0x" + keccak(raw).hex()[-40:])

    def _next_create_address(self, creator: str) -> str:
        nonce = self.world.nonces.get(creator, 1)
        self.world.nonces[creator] = nonce + 1
        return self._create_address(creator, nonce)

    # ============================================================
    # BLOCKS & TIME
    # ============================================================

    def _peek_timestamp(self) -> int:
        if self._next_timestamp is not None:
            return self._next_timestamp
        parent = self.latest_block.timestamp
        return max(parent + 1, int(time.time()) + self._time_offset, self._time_floor)

    def _take_timestamp(self) -> int:
        ts = self._peek_timestamp()
        self._next_timestamp = None
        return ts

    def _append_block(self, tx_hashes: list[bytes], gas_used: int, timestamp: int) -> Block:
        number = len(self.blocks)
        parent_hash = self.blocks[-1].hash if self.blocks else b"\x00" * 32
        block_hash = keccak(rlp.encode([parent_hash, number, timestamp, tx_hashes]))
        block = Block(
            number=number,
            hash=block_hash,
            parent_hash=parent_hash,
            timestamp=timestamp,
            gas_used=gas_used,
            transactions=list(tx_hashes),
        )
        self.blocks.append(block)
        return block

    def mine(self, timestamp: Optional[int] = None) -> Block:
        """evm_mine: an empty block, optionally at an explicit timestamp."""
        if timestamp is not None:
            self.set_next_block_timestamp(timestamp)
        return self._append_block([], 0, timestamp=self._take_timestamp())

    def increase_time(self, seconds: int) -> int:
        """evm_increaseTime: shift the clock; the next block is at least latest + seconds."""
        if seconds < 0:
            raise RPCError("cannot increase time by a negative amount")
        self._time_offset += seconds
        self._time_floor = max(self._time_floor, self.latest_block.timestamp + seconds)
        return self._time_offset

    def set_next_block_timestamp(self, timestamp: int) -> None:
        if timestamp <= self.latest_block.timestamp:
            raise RPCError(
                f"timestamp {timestamp} is lower than or equal to previous block's timestamp "
                f"{self.latest_block.timestamp}"
            )
        self._next_timestamp = timestamp

    # ============================================================
    # SNAPSHOTS
    # ============================================================

    def snapshot(self) -> int:
        self._snapshot_counter += 1
        self._snapshots[self._snapshot_counter] = copy.deepcopy((
            self.world,
            self.blocks,
            self.transactions,
            self.receipts,
            self._time_offset,
            self._time_floor,
        ))
        return self._snapshot_counter

    def revert(self, snapshot_id: int) -> bool:
        """evm_revert: restore a snapshot; it (and later ones) are consumed."""
        saved = self._snapshots.get(snapshot_id)
        if saved is None:
            return False
        (
            self.world,
            self.blocks,
            self.transactions,
            self.receipts,
            self._time_offset,
            self._time_floor,
        ) = copy.deepcopy(saved)
        self._next_timestamp = None
        for sid in [s for s in self._snapshots if s >= snapshot_id]:
            del self._snapshots[sid]
        return True

    def model_names(self) -> list[str]:
        return list(MODELS)


def _big_endian_int(raw: bytes) -> int:
    return int.from_bytes(raw, "big")


def _intrinsic_gas(data: bytes, creating: bool) -> int:
    zeros = data.count(0)
    gas = TX_BASE_GAS + CALLDATA_ZERO_GAS * zeros + CALLDATA_NONZERO_GAS * (len(data) - zeros)
    if creating:
        gas += TX_CREATE_GAS
    return gas


def _topics_match(log_topics: list[bytes], wanted: list) -> bool:
    for position, choice in enumerate(wanted):
        if choice is None:
            continue
        if position >= len(log_topics):
            return False
        options = choice if isinstance(choice, list) else [choice]
        if log_topics[position] not in options:
            return False
    return True
