"""
Contract Models - Python behaviour of Operation and OperationFactory

The dev chain does not run EVM bytecode. Each contract is a Python class
whose external functions are dispatched by 4-byte selector from the same
ABI the client uses, so calldata, return data and logs are byte-for-byte
what a real node would produce for these signatures.

Rules every model follows:
- storage lives in plain attributes (deep-copied for snapshots / rollback)
- a failed require() raises Revert(reason); the chain rolls state back
- external functions receive a Message as their first argument
"""

import re
import logging
from typing import Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from core.abi import (
    OPERATION_ABI,
    OPERATION_FACTORY_ABI,
    OPERATION_INIT_TYPES,
    EVENT_CONTRACT_DEPLOYED,
    ZERO_ADDRESS,
    abi_signature,
)

logger = logging.getLogger("opfactory.devchain.models")

# Error(string) selector used by Solidity for require() reasons
ERROR_SELECTOR = bytes.fromhex("08c379a0")

# Dev artifacts: 0xfe (INVALID) so real EVMs refuse to run them
DEV_CODE_PREFIX = b"\xfe" + b"devchain:"

# EIP-1167 minimal proxy runtime code, split around the implementation address
EIP1167_PREFIX = bytes.fromhex("363d3d373d3d3d363d73")
EIP1167_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")


class Revert(Exception):
    """A require() failure inside a contract model."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def encoded(self) -> bytes:
        """Revert data as Solidity emits it: Error(string)."""
        return ERROR_SELECTOR + encode(["string"], [self.reason])


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def dev_bytecode(name: str) -> bytes:
    """Creation (and runtime) code the dev chain recognises for a model."""
    return DEV_CODE_PREFIX + keccak(text=name)[:20]


def decode_checksummed(types: list[str], data: bytes) -> tuple:
    """eth_abi.decode with addresses checksummed, the form world state is keyed by."""
    return tuple(_checksum(t, v) for t, v in zip(types, decode(types, data)))


def _checksum(typ: str, value):
    if typ.endswith("]"):
        base = typ[:typ.rindex("[")]
        return [_checksum(base, v) for v in value]
    if typ == "address":
        return to_checksum_address(value)
    return value


def eip1167_code(implementation: str) -> bytes:
    return EIP1167_PREFIX + bytes.fromhex(implementation[2:]) + EIP1167_SUFFIX


def eip1167_target(code: bytes) -> Optional[str]:
    """Implementation address behind a minimal proxy, or None."""
    if (
        len(code) == len(EIP1167_PREFIX) + 20 + len(EIP1167_SUFFIX)
        and code.startswith(EIP1167_PREFIX)
        and code.endswith(EIP1167_SUFFIX)
    ):
        return to_checksum_address(code[len(EIP1167_PREFIX):len(EIP1167_PREFIX) + 20])
    return None


# ============================================================
# BASE MODEL
# ============================================================

class ContractModel:
    """
    Base for contract models.

    Subclasses set NAME and ABI and implement one snake_case method per
    ABI function (build → build, fetchNextTerraAddress → fetch_next_terra_address).
    """

    NAME: str = ""
    ABI: list = []

    def __init__(self, address: str):
        self.address = address

    # --- ABI tables (computed once per class) ---

    @classmethod
    def functions(cls) -> dict[bytes, dict]:
        cache = cls.__dict__.get("_selector_table")
        if cache is None:
            cache = {
                keccak(text=abi_signature(entry))[:4]: entry
                for entry in cls.ABI
                if entry.get("type") == "function"
            }
            cls._selector_table = cache
        return cache

    @classmethod
    def event(cls, name: str) -> dict:
        for entry in cls.ABI:
            if entry.get("type") == "event" and entry["name"] == name:
                return entry
        raise KeyError(f"{cls.NAME} has no event {name}")

    @classmethod
    def bytecode(cls) -> bytes:
        return dev_bytecode(cls.NAME)

    # --- dispatch ---

    def dispatch(self, msg, calldata: bytes) -> bytes:
        """Run the function selected by calldata and return ABI-encoded output."""
        if len(calldata) < 4:
            raise Revert("function selector was not recognized and there's no fallback function")

        entry = self.functions().get(calldata[:4])
        if entry is None:
            raise Revert("function selector was not recognized and there's no fallback function")

        if msg.value and entry.get("stateMutability") != "payable":
            raise Revert("non-payable function was called with value")

        input_types = [i["type"] for i in entry.get("inputs", [])]
        try:
            args = decode_checksummed(input_types, calldata[4:]) if input_types else ()
        except DecodingError as e:
            raise Revert(f"invalid calldata for {entry['name']}: {e}")

        handler = getattr(self, _snake(entry["name"]))
        result = handler(msg, *args)

        output_types = [o["type"] for o in entry.get("outputs", [])]
        if not output_types:
            return b""
        if len(output_types) == 1:
            result = (result,)
        return encode(output_types, list(result))


# ============================================================
# OPERATION
# ============================================================

class Operation(ContractModel):
    """
    Template operation. Clones share its code but never its storage.

    initialize() binds (controller, terraAddress, owner, operator) once.
    It emits nothing so that a factory's ContractDeployed stays logs[0].
    """

    NAME = "Operation"
    ABI = OPERATION_ABI

    def __init__(self, address: str):
        super().__init__(address)
        self._initialized = False
        self._controller = ZERO_ADDRESS
        self._terra_address = b"\x00" * 32
        self._owner = ZERO_ADDRESS
        self._operator = ZERO_ADDRESS

    def initialize(self, msg, args: bytes):
        if self._initialized:
            raise Revert("Initializable: contract is already initialized")
        try:
            controller, terra_address, owner, operator = decode_checksummed(OPERATION_INIT_TYPES, args)
        except DecodingError:
            raise Revert("Operation: invalid initialize arguments")

        self._initialized = True
        self._controller = controller
        self._terra_address = terra_address
        self._owner = owner
        self._operator = operator

    def controller(self, msg):
        return self._controller

    def terra_address(self, msg):
        return self._terra_address

    def owner(self, msg):
        return self._owner

    def operator(self, msg):
        return self._operator


# ============================================================
# OPERATION FACTORY
# ============================================================

class OperationFactory(ContractModel):
    """
    Registry of template operations plus a FIFO queue of terra addresses.

    Access:
      owner            → transferOwnership, transferOperator, setStandardOperation
      owner|operator   → pushTerraAddresses
      operator         → build
    """

    NAME = "OperationFactory"
    ABI = OPERATION_FACTORY_ABI

    def __init__(self, address: str):
        super().__init__(address)
        self._owner = ZERO_ADDRESS
        self._operator = ZERO_ADDRESS
        self._standards: dict[int, str] = {}
        self._queue: list[bytes] = []
        self._head = 0

    def constructor(self, msg):
        self._owner = msg.sender
        self._operator = msg.sender
        msg.emit("OwnershipTransferred", previousOwner=ZERO_ADDRESS, newOwner=msg.sender)
        msg.emit("OperatorTransferred", previousOperator=ZERO_ADDRESS, newOperator=msg.sender)

    # --- modifiers ---

    def _only_owner(self, msg):
        if msg.sender != self._owner:
            raise Revert("Ownable: caller is not the owner")

    def _only_operator(self, msg):
        if msg.sender != self._operator:
            raise Revert("Operator: caller is not the operator")

    def _only_granted(self, msg):
        if msg.sender not in (self._owner, self._operator):
            raise Revert("Operator: caller is neither owner nor operator")

    # --- roles ---

    def owner(self, msg):
        return self._owner

    def operator(self, msg):
        return self._operator

    def transfer_ownership(self, msg, new_owner: str):
        self._only_owner(msg)
        if new_owner == ZERO_ADDRESS:
            raise Revert("Ownable: new owner is the zero address")
        previous, self._owner = self._owner, new_owner
        msg.emit("OwnershipTransferred", previousOwner=previous, newOwner=new_owner)

    def transfer_operator(self, msg, new_operator: str):
        self._only_owner(msg)
        if new_operator == ZERO_ADDRESS:
            raise Revert("Operator: new operator is the zero address")
        previous, self._operator = self._operator, new_operator
        msg.emit("OperatorTransferred", previousOperator=previous, newOperator=new_operator)

    # --- standards ---

    def standards(self, msg, opt_id: int):
        return self._standards.get(opt_id, ZERO_ADDRESS)

    def set_standard_operation(self, msg, opt_id: int, operation: str):
        self._only_owner(msg)
        self._standards[opt_id] = operation
        logger.debug(f"standard {opt_id} → {operation}")

    # --- terra address queue ---

    def push_terra_addresses(self, msg, addrs):
        self._only_granted(msg)
        self._queue.extend(addrs)

    def fetch_next_terra_address(self, msg):
        if self._head >= len(self._queue):
            raise Revert("OperationFactory: terra address queue is empty")
        return self._queue[self._head]

    def remaining_terra_addresses(self, msg):
        return len(self._queue) - self._head

    # --- build ---

    def build(self, msg, opt_id: int, controller: str):
        self._only_operator(msg)

        template = self._standards.get(opt_id, ZERO_ADDRESS)
        if template == ZERO_ADDRESS:
            raise Revert("OperationFactory: standard operation not registered")

        terra_address = self.fetch_next_terra_address(msg)
        self._head += 1

        instance = msg.clone(template)
        msg.emit(
            EVENT_CONTRACT_DEPLOYED,
            deployer=msg.sender,
            terraAddress=terra_address,
            instance=instance,
        )

        init_args = encode(OPERATION_INIT_TYPES, [controller, terra_address, self._owner, msg.sender])
        msg.call(instance, "initialize", init_args)
        return instance


MODELS: dict[str, type[ContractModel]] = {
    Operation.NAME: Operation,
    OperationFactory.NAME: OperationFactory,
}


def model_for_creation_code(data: bytes) -> Optional[tuple[type[ContractModel], bytes]]:
    """Match creation calldata to a model; returns (model class, constructor args)."""
    for cls in MODELS.values():
        code = cls.bytecode()
        if data.startswith(code):
            return cls, data[len(code):]
    return None
