"""
Operation template contract handle.
"""

import logging
from pathlib import Path
from typing import Optional

from web3 import Web3

from core.abi import OPERATION_ABI, OPERATION_INIT_TYPES
from core.artifacts import load_artifact
from core.chain import ContractHandle, TxResult, deploy_contract
from core.config import DEFAULT_GAS_BUFFER, DEFAULT_TX_TIMEOUT
from core.signer import Signer
from core.utils import encode_parameters, to_bytes32

logger = logging.getLogger("opfactory.operation")


class Operation(ContractHandle):
    NAME = "Operation"

    @classmethod
    def deploy(
        cls,
        w3: Web3,
        signer: Signer,
        artifacts_dir: Optional[Path] = None,
        gas_buffer: float = DEFAULT_GAS_BUFFER,
        timeout: int = DEFAULT_TX_TIMEOUT,
    ) -> "Operation":
        artifact = load_artifact(cls.NAME, artifacts_dir)
        address, _ = deploy_contract(
            w3, signer, artifact.abi, artifact.bytecode,
            gas_buffer=gas_buffer, timeout=timeout,
        )
        logger.info(f"Operation deployed at {address} by {signer.short()}")
        return cls(w3, address, OPERATION_ABI, signer=signer, gas_buffer=gas_buffer, timeout=timeout)

    @classmethod
    def at(cls, w3: Web3, address: str, signer: Optional[Signer] = None) -> "Operation":
        return cls(w3, address, OPERATION_ABI, signer=signer)

    # --- writes ---

    def initialize(self, controller: str, terra_address, owner: str, operator: str) -> TxResult:
        """initialize(abi.encode(controller, terraAddress, owner, operator)); once only."""
        args = encode_parameters(
            OPERATION_INIT_TYPES,
            [controller, to_bytes32(terra_address), owner, operator],
        )
        return self.initialize_raw(args)

    def initialize_raw(self, args: bytes) -> TxResult:
        return self._transact("initialize", bytes(args))

    # --- views ---

    def controller(self) -> str:
        return self._call("controller")

    def terra_address(self) -> str:
        return Web3.to_hex(self._call("terraAddress"))

    def owner(self) -> str:
        return self._call("owner")

    def operator(self) -> str:
        return self._call("operator")
