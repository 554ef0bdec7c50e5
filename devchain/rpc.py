"""
JSON-RPC dispatch for the dev chain.

Turns Ethereum JSON-RPC request dicts into DevChain calls and formats the
results the way geth/Hardhat do (hex quantities, 0x-prefixed data), so that
web3.py's result formatters accept them unchanged.
"""

import logging
from typing import Any, Optional

import rlp
from eth_utils import keccak, to_checksum_address

from devchain.chain import (
    DevChain,
    RPCError,
    OutOfGas,
    Block,
    Log,
    Receipt,
    Transaction,
    EMPTY_BLOOM,
)
from devchain.models import Revert

logger = logging.getLogger("opfactory.devchain.rpc")

CLIENT_VERSION = "opfactory-devchain/0.1.0"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000
EXECUTION_REVERTED = 3

EMPTY_UNCLES_HASH = keccak(rlp.encode([]))
EMPTY_TRIE_ROOT = keccak(rlp.encode(b""))


# ============================================================
# ENCODING HELPERS
# ============================================================

def to_quantity(value: int) -> str:
    return hex(value)


def to_data(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def parse_quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"invalid quantity: {value!r}")


def parse_data(value) -> bytes:
    # In-process callers may hand over HexBytes instead of a JSON hex string
    if not value:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def parse_tx(params: dict) -> dict:
    """Normalise a JSON-RPC transaction object into DevChain's dict form."""
    tx: dict = {}
    if params.get("from"):
        tx["from"] = to_checksum_address(params["from"])
    if params.get("to"):
        tx["to"] = to_checksum_address(params["to"])
    for key in ("gas", "gasPrice", "maxFeePerGas", "value", "nonce", "chainId"):
        if params.get(key) is not None:
            tx[key] = parse_quantity(params[key])
    tx["data"] = parse_data(params.get("data") or params.get("input"))
    return tx


# ============================================================
# RESULT FORMATTERS
# ============================================================

def format_block(block: Block, transactions: Optional[list] = None) -> dict:
    return {
        "number": to_quantity(block.number),
        "hash": to_data(block.hash),
        "parentHash": to_data(block.parent_hash),
        "mixHash": to_data(b"\x00" * 32),
        "nonce": "0x0000000000000000",
        "sha3Uncles": to_data(EMPTY_UNCLES_HASH),
        "logsBloom": to_data(EMPTY_BLOOM),
        "transactionsRoot": to_data(EMPTY_TRIE_ROOT),
        "stateRoot": to_data(EMPTY_TRIE_ROOT),
        "receiptsRoot": to_data(EMPTY_TRIE_ROOT),
        "miner": block.miner,
        "difficulty": "0x0",
        "totalDifficulty": "0x0",
        "extraData": "0x",
        "size": to_quantity(1000),
        "gasLimit": to_quantity(block.gas_limit),
        "gasUsed": to_quantity(block.gas_used),
        "timestamp": to_quantity(block.timestamp),
        "transactions": transactions if transactions is not None else [to_data(h) for h in block.transactions],
        "uncles": [],
        "baseFeePerGas": "0x0",
    }


def format_transaction(tx: Transaction) -> dict:
    return {
        "hash": to_data(tx.hash),
        "nonce": to_quantity(tx.nonce),
        "blockHash": to_data(tx.block_hash),
        "blockNumber": to_quantity(tx.block_number),
        "transactionIndex": to_quantity(tx.index),
        "from": tx.sender,
        "to": tx.to,
        "value": to_quantity(tx.value),
        "gas": to_quantity(tx.gas),
        "gasPrice": to_quantity(tx.gas_price),
        "input": to_data(tx.data),
        "type": to_quantity(tx.type),
        "chainId": to_quantity(tx.chain_id),
        "v": to_quantity(tx.v),
        "r": to_quantity(tx.r),
        "s": to_quantity(tx.s),
    }


def format_log(log: Log) -> dict:
    return {
        "address": log.address,
        "topics": [to_data(t) for t in log.topics],
        "data": to_data(log.data),
        "blockNumber": to_quantity(log.block_number),
        "blockHash": to_data(log.block_hash),
        "transactionHash": to_data(log.transaction_hash),
        "transactionIndex": to_quantity(log.transaction_index),
        "logIndex": to_quantity(log.log_index),
        "removed": False,
    }


def format_receipt(receipt: Receipt) -> dict:
    return {
        "transactionHash": to_data(receipt.transaction_hash),
        "transactionIndex": to_quantity(receipt.transaction_index),
        "blockHash": to_data(receipt.block_hash),
        "blockNumber": to_quantity(receipt.block_number),
        "from": receipt.sender,
        "to": receipt.to,
        "cumulativeGasUsed": to_quantity(receipt.gas_used),
        "gasUsed": to_quantity(receipt.gas_used),
        "effectiveGasPrice": to_quantity(receipt.effective_gas_price),
        "contractAddress": receipt.contract_address,
        "logs": [format_log(log) for log in receipt.logs],
        "logsBloom": to_data(EMPTY_BLOOM),
        "status": to_quantity(receipt.status),
        "type": to_quantity(receipt.type),
    }


# ============================================================
# DISPATCHER
# ============================================================

class RPCDispatcher:
    """
    Usage:
        dispatcher = RPCDispatcher(DevChain())
        dispatcher.handle({"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []})
    """

    def __init__(self, chain: DevChain):
        self.chain = chain
        self._methods = {
            "web3_clientVersion": self._client_version,
            "net_version": self._net_version,
            "eth_chainId": self._chain_id,
            "eth_accounts": self._accounts,
            "eth_blockNumber": self._block_number,
            "eth_gasPrice": self._gas_price,
            "eth_maxPriorityFeePerGas": self._max_priority_fee,
            "eth_getBalance": self._get_balance,
            "eth_getTransactionCount": self._get_transaction_count,
            "eth_getCode": self._get_code,
            "eth_getBlockByNumber": self._get_block_by_number,
            "eth_getBlockByHash": self._get_block_by_hash,
            "eth_call": self._call,
            "eth_estimateGas": self._estimate_gas,
            "eth_sendTransaction": self._send_transaction,
            "eth_sendRawTransaction": self._send_raw_transaction,
            "eth_getTransactionByHash": self._get_transaction_by_hash,
            "eth_getTransactionReceipt": self._get_transaction_receipt,
            "eth_getLogs": self._get_logs,
            "evm_increaseTime": self._increase_time,
            "evm_setNextBlockTimestamp": self._set_next_block_timestamp,
            "evm_mine": self._mine,
            "evm_snapshot": self._snapshot,
            "evm_revert": self._revert,
        }

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    def handle(self, request: dict) -> dict:
        """Handle one JSON-RPC request object and return the response object."""
        request_id = request.get("id")
        method = request.get("method")
        params = request.get("params") or []

        handler = self._methods.get(method)
        if handler is None:
            return _error(request_id, METHOD_NOT_FOUND, f"the method {method} does not exist/is not available")

        try:
            result = handler(*params)
        except Revert as e:
            return _error(
                request_id,
                EXECUTION_REVERTED,
                f"execution reverted: {e.reason}",
                data=to_data(e.encoded()),
            )
        except OutOfGas as e:
            return _error(request_id, SERVER_ERROR, str(e))
        except RPCError as e:
            return _error(request_id, e.code, e.message, data=e.data)
        except (KeyError, IndexError, ValueError, TypeError) as e:
            logger.debug(f"{method}: invalid params {params!r}: {e}")
            return _error(request_id, INVALID_PARAMS, f"invalid params for {method}: {e}")

        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def handle_batch(self, requests: list[dict]) -> list[dict]:
        return [self.handle(r) for r in requests]

    # --- node info ---

    def _client_version(self):
        return CLIENT_VERSION

    def _net_version(self):
        return str(self.chain.chain_id)

    def _chain_id(self):
        return to_quantity(self.chain.chain_id)

    def _accounts(self):
        return list(self.chain.accounts)

    def _block_number(self):
        return to_quantity(self.chain.block_number)

    def _gas_price(self):
        return to_quantity(self.chain.gas_price)

    def _max_priority_fee(self):
        return to_quantity(self.chain.gas_price)

    # --- state ---

    def _get_balance(self, address, block="latest"):
        return to_quantity(self.chain.balance(address))

    def _get_transaction_count(self, address, block="latest"):
        return to_quantity(self.chain.nonce(address))

    def _get_code(self, address, block="latest"):
        return to_data(self.chain.code(address))

    # --- blocks ---

    def _resolve_block_number(self, tag) -> int:
        if tag in ("latest", "pending", "safe", "finalized", None):
            return self.chain.block_number
        if tag == "earliest":
            return 0
        return parse_quantity(tag)

    def _format_block(self, block: Optional[Block], full: bool):
        if block is None:
            return None
        if full:
            txs = [format_transaction(self.chain.transaction(h)) for h in block.transactions]
            return format_block(block, txs)
        return format_block(block)

    def _get_block_by_number(self, tag="latest", full=False):
        return self._format_block(self.chain.get_block(self._resolve_block_number(tag)), full)

    def _get_block_by_hash(self, block_hash, full=False):
        return self._format_block(self.chain.get_block_by_hash(parse_data(block_hash)), full)

    # --- execution ---

    def _call(self, tx, block="latest"):
        return to_data(self.chain.call(parse_tx(tx)))

    def _estimate_gas(self, tx, block="latest"):
        return to_quantity(self.chain.estimate_gas(parse_tx(tx)))

    def _send_transaction(self, tx):
        return to_data(self.chain.send_transaction(parse_tx(tx)))

    def _send_raw_transaction(self, raw):
        return to_data(self.chain.send_raw_transaction(parse_data(raw)))

    def _get_transaction_by_hash(self, tx_hash):
        tx = self.chain.transaction(parse_data(tx_hash))
        return format_transaction(tx) if tx else None

    def _get_transaction_receipt(self, tx_hash):
        receipt = self.chain.receipt(parse_data(tx_hash))
        return format_receipt(receipt) if receipt else None

    def _get_logs(self, log_filter=None):
        log_filter = log_filter or {}
        if log_filter.get("blockHash"):
            block = self.chain.get_block_by_hash(parse_data(log_filter["blockHash"]))
            if block is None:
                raise RPCError("unknown block")
            from_block = to_block = block.number
        else:
            from_block = self._resolve_block_number(log_filter.get("fromBlock", "latest"))
            to_block = self._resolve_block_number(log_filter.get("toBlock", "latest"))

        address = log_filter.get("address")
        if isinstance(address, str):
            address = [address]

        topics = []
        for choice in log_filter.get("topics") or []:
            if choice is None:
                topics.append(None)
            elif isinstance(choice, list):
                topics.append([parse_data(t) for t in choice])
            else:
                topics.append(parse_data(choice))

        logs = self.chain.get_logs(from_block, to_block, address=address, topics=topics)
        return [format_log(log) for log in logs]

    # --- dev controls ---

    def _increase_time(self, seconds):
        return self.chain.increase_time(parse_quantity(seconds))

    def _set_next_block_timestamp(self, timestamp):
        self.chain.set_next_block_timestamp(parse_quantity(timestamp))
        return None

    def _mine(self, timestamp=None):
        self.chain.mine(parse_quantity(timestamp) if timestamp is not None else None)
        return "0x0"

    def _snapshot(self):
        return to_quantity(self.chain.snapshot())

    def _revert(self, snapshot_id):
        return self.chain.revert(parse_quantity(snapshot_id))


def _error(request_id, code: int, message: str, data: Optional[str] = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}
