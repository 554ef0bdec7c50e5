"""
Chain Layer - Transaction Plumbing

Everything the contract handles share: connecting to an RPC, sending a
contract call as a transaction, deploying bytecode, and a base class for
contract handles bound to a signer.

Design:
- Gas estimation + buffer (GAS_BUFFER, default 20%), nonce and gas price
  from chain
- A revert detected while estimating is reported immediately (no tx sent);
  any other estimation failure falls back to DEFAULT_GAS
- Local signing when the signer has a key, eth_sendTransaction otherwise
- Non-fatal: write failures come back as TxResult(success=False) and are
  logged; only deployment raises (there is no handle to return)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from web3 import Web3
from web3.exceptions import ContractLogicError

from core.config import DEFAULT_GAS_BUFFER, DEFAULT_TX_TIMEOUT
from core.signer import Signer
from core.utils import abbreviate_hex

logger = logging.getLogger("opfactory.chain")

DEFAULT_GAS = 500_000


class DeploymentError(Exception):
    """Contract creation failed (reverted, out of gas, or no contract address)."""
    pass


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class TxResult:
    """Result of an on-chain transaction attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    gas_used: int = 0
    gas_price_wei: int = 0
    block_number: int = 0
    receipt: Optional[Any] = field(default=None, repr=False)


# ============================================================
# CONNECTION
# ============================================================

def connect(rpc_url: str, timeout: int = 30) -> Web3:
    """HTTP Web3 for rpc_url; raises ConnectionError if the node is unreachable."""
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    if not w3.is_connected():
        raise ConnectionError(f"Cannot connect to RPC {rpc_url}")
    logger.info(f"Connected to {rpc_url} | chain_id={w3.eth.chain_id} | block={w3.eth.block_number}")
    return w3


def revert_reason(error: Exception) -> str:
    """Human-readable reason from a ContractLogicError (or any exception)."""
    message = getattr(error, "message", None)
    if message:
        return str(message)
    return f"{type(error).__name__}: {error}"


# ============================================================
# SEND
# ============================================================

def send_transaction(
    w3: Web3,
    signer: Signer,
    tx_fn,
    value: int = 0,
    gas_buffer: float = DEFAULT_GAS_BUFFER,
    timeout: int = DEFAULT_TX_TIMEOUT,
) -> TxResult:
    """
    Build, sign, send and wait for a contract transaction.

    Args:
        w3: Connected Web3
        signer: Sender (local key or unlocked node account)
        tx_fn: contract.functions.<name>(...) or contract.constructor(...)
        value: wei attached to the call
    """
    sender = signer.address
    label = getattr(tx_fn, "fn_name", None) or "constructor"

    try:
        gas_estimate = tx_fn.estimate_gas({"from": sender, "value": value})
        gas = int(gas_estimate * gas_buffer)
    except ContractLogicError as e:
        reason = revert_reason(e)
        logger.warning(f"TX REJECTED [{label}] by {signer.short()}: {reason}")
        return TxResult(success=False, error=reason)
    except Exception as gas_err:
        logger.warning(f"Gas estimation failed for {label}, using default {DEFAULT_GAS}: {gas_err}")
        gas = DEFAULT_GAS

    try:
        tx = tx_fn.build_transaction({
            "from": sender,
            "value": value,
            "nonce": w3.eth.get_transaction_count(sender),
            "gasPrice": w3.eth.gas_price,
            "chainId": w3.eth.chain_id,
            "gas": gas,
        })

        if signer.can_sign:
            signed = w3.eth.account.sign_transaction(tx, signer.private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        else:
            tx_hash = w3.eth.send_transaction(tx)

        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.warning(f"TX ERROR [{label}]: {error}")
        return TxResult(success=False, error=error)

    tx_hash_hex = Web3.to_hex(tx_hash)
    gas_used = receipt.get("gasUsed", 0)
    gas_price_wei = receipt.get("effectiveGasPrice", 0)

    if receipt["status"] != 1:
        error = f"TX reverted: {tx_hash_hex}"
        logger.warning(f"TX FAILED [{label}]: {abbreviate_hex(error)}")
        return TxResult(
            success=False,
            tx_hash=tx_hash_hex,
            error=error,
            gas_used=gas_used,
            gas_price_wei=gas_price_wei,
            block_number=receipt["blockNumber"],
            receipt=receipt,
        )

    logger.info(f"TX SUCCESS [{label}]: {tx_hash_hex[:18]}... | gas={gas_used} | block={receipt['blockNumber']}")
    return TxResult(
        success=True,
        tx_hash=tx_hash_hex,
        gas_used=gas_used,
        gas_price_wei=gas_price_wei,
        block_number=receipt["blockNumber"],
        receipt=receipt,
    )


def deploy_contract(
    w3: Web3,
    signer: Signer,
    abi: list,
    bytecode: str,
    *constructor_args,
    gas_buffer: float = DEFAULT_GAS_BUFFER,
    timeout: int = DEFAULT_TX_TIMEOUT,
) -> tuple[str, TxResult]:
    """Deploy bytecode from signer. Returns (contract address, TxResult)."""
    factory = w3.eth.contract(abi=abi, bytecode=bytecode)
    result = send_transaction(
        w3, signer, factory.constructor(*constructor_args),
        gas_buffer=gas_buffer, timeout=timeout,
    )
    if not result.success:
        raise DeploymentError(result.error)

    address = result.receipt.get("contractAddress")
    if not address:
        raise DeploymentError(f"No contract address in receipt {result.tx_hash}")
    return Web3.to_checksum_address(address), result


# ============================================================
# CONTRACT HANDLE BASE
# ============================================================

class ContractHandle:
    """
    A deployed contract bound to a signer, like an ethers Contract.

        factory.connect(controller).build(0, controller.address)
    """

    NAME = ""

    def __init__(
        self,
        w3: Web3,
        address: str,
        abi: list,
        signer: Optional[Signer] = None,
        gas_buffer: float = DEFAULT_GAS_BUFFER,
        timeout: int = DEFAULT_TX_TIMEOUT,
    ):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.abi = abi
        self.signer = signer
        self.gas_buffer = gas_buffer
        self.timeout = timeout
        self.contract = w3.eth.contract(address=self.address, abi=abi)

    def connect(self, signer: Signer):
        """Same contract, different sender."""
        return type(self)(
            self.w3, self.address, self.abi,
            signer=signer, gas_buffer=self.gas_buffer, timeout=self.timeout,
        )

    def _call(self, fn_name: str, *args):
        fn = self.contract.functions[fn_name](*args)
        if self.signer is not None:
            return fn.call({"from": self.signer.address})
        return fn.call()

    def _transact(self, fn_name: str, *args) -> TxResult:
        if self.signer is None:
            raise ValueError(f"{self.NAME}.{fn_name}: no signer connected")
        return send_transaction(
            self.w3, self.signer, self.contract.functions[fn_name](*args),
            gas_buffer=self.gas_buffer, timeout=self.timeout,
        )

    def code(self) -> bytes:
        return bytes(self.w3.eth.get_code(self.address))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address})"
