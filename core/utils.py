"""
Shared chain helpers: parameter encoding, struct filtering, block time.
"""

import re
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Optional, Union

import rlp
from eth_abi import encode
from eth_utils import keccak, to_checksum_address, is_hex
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger("opfactory.utils")


def to_bytes32(value: Union[str, bytes]) -> bytes:
    """0x-hex string or bytes → exactly 32 bytes."""
    if isinstance(value, str):
        if not is_hex(value):
            raise ValueError(f"not a hex string: {value!r}")
        raw = bytes.fromhex(value[2:] if value.startswith(("0x", "0X")) else value)
    else:
        raw = bytes(value)
    if len(raw) != 32:
        raise ValueError(f"expected 32 bytes, got {len(raw)}")
    return raw


def encode_parameters(types: Sequence[str], values: Sequence[Any]) -> HexBytes:
    """
    abi.encode(values) for the given Solidity types.

    Hex strings are accepted wherever a bytes/bytesN value is expected,
    matching ethers' defaultAbiCoder.
    """
    if len(types) != len(values):
        raise ValueError(f"{len(types)} types but {len(values)} values")
    return HexBytes(encode(list(types), [_coerce(t, v) for t, v in zip(types, values)]))


def _coerce(typ: str, value: Any) -> Any:
    if typ.endswith("]"):
        base = typ[:typ.rindex("[")]
        return [_coerce(base, v) for v in value]
    if typ.startswith("bytes") and isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if typ == "address" and isinstance(value, str):
        return to_checksum_address(value)
    return value


def filter_struct_fields(struct: Any, fields: Optional[Sequence[str]] = None) -> dict:
    """
    Named fields of a decoded struct.

    struct may be a mapping (AttributeDict, event args) or a positional
    tuple; a tuple needs `fields` to name its members. Positional keys
    (ints or digit strings) are dropped from mappings.
    """
    if isinstance(struct, Mapping):
        named = {
            k: v for k, v in struct.items()
            if not (isinstance(k, int) or (isinstance(k, str) and k.isdigit()))
        }
        if fields is None:
            return named
        return {f: named[f] for f in fields}

    if fields is None:
        raise ValueError("positional struct needs field names")
    if len(fields) != len(struct):
        raise ValueError(f"{len(fields)} field names for a {len(struct)}-member struct")
    return dict(zip(fields, struct))


def latest_blocktime(w3: Web3) -> int:
    """Timestamp of the latest block."""
    return w3.eth.get_block("latest")["timestamp"]


def advance_time_and_block(w3: Web3, seconds: int) -> int:
    """
    Move the node clock forward and mine one block (Hardhat/Ganache/devchain).
    Returns the new latest block timestamp.
    """
    w3.manager.request_blocking("evm_increaseTime", [seconds])
    w3.manager.request_blocking("evm_mine", [])
    ts = latest_blocktime(w3)
    logger.debug(f"advanced {seconds}s → block time {ts}")
    return ts


def predict_create_address(deployer: str, nonce: int) -> str:
    """CREATE: keccak256(rlp([sender, nonce]))[12:]"""
    raw = rlp.encode([bytes.fromhex(to_checksum_address(deployer)[2:]), nonce])
    return to_checksum_address("0x" + keccak(raw).hex()[-40:])


_HEX32 = re.compile(r"0x[0-9a-fA-F]{64}(?![0-9a-fA-F])")


def abbreviate_hex(text: str) -> str:
    """
    Shorten 32-byte hex values (tx hashes, terra addresses) for log lines:
    0xdeadbeef...beef. Full-length values would be redacted as secrets.
    """
    return _HEX32.sub(lambda m: f"{m.group(0)[:10]}...{m.group(0)[-4:]}", text)
