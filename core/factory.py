"""
OperationFactory contract handle.

Lifecycle (owner O, operator C):
    factory = OperationFactory.deploy(w3, O)
    factory.transfer_operator(C.address)
    factory.set_standard_operation(0, template.address)
    factory.push_terra_addresses([terra])
    result = factory.connect(C).build(0, C.address)
    result.instance, result.terra_address, result.deployer   ← from receipt.logs[0]
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from web3 import Web3
from web3.exceptions import MismatchedABI

from core.abi import OPERATION_FACTORY_ABI, EVENT_CONTRACT_DEPLOYED, abi_signature
from core.artifacts import load_artifact
from core.chain import ContractHandle, TxResult, deploy_contract
from core.config import DEFAULT_GAS_BUFFER, DEFAULT_TX_TIMEOUT
from core.signer import Signer
from core.utils import abbreviate_hex, to_bytes32

logger = logging.getLogger("opfactory.factory")


@dataclass
class BuildResult(TxResult):
    """TxResult plus the decoded ContractDeployed event."""
    deployer: str = ""
    terra_address: str = ""
    instance: str = ""


class OperationFactory(ContractHandle):
    NAME = "OperationFactory"

    @classmethod
    def deploy(
        cls,
        w3: Web3,
        signer: Signer,
        artifacts_dir: Optional[Path] = None,
        gas_buffer: float = DEFAULT_GAS_BUFFER,
        timeout: int = DEFAULT_TX_TIMEOUT,
    ) -> "OperationFactory":
        artifact = load_artifact(cls.NAME, artifacts_dir)
        address, _ = deploy_contract(
            w3, signer, artifact.abi, artifact.bytecode,
            gas_buffer=gas_buffer, timeout=timeout,
        )
        logger.info(f"OperationFactory deployed at {address} by {signer.short()}")
        return cls(w3, address, OPERATION_FACTORY_ABI, signer=signer, gas_buffer=gas_buffer, timeout=timeout)

    @classmethod
    def at(cls, w3: Web3, address: str, signer: Optional[Signer] = None) -> "OperationFactory":
        return cls(w3, address, OPERATION_FACTORY_ABI, signer=signer)

    # ============================================================
    # ROLES
    # ============================================================

    def owner(self) -> str:
        return self._call("owner")

    def operator(self) -> str:
        return self._call("operator")

    def transfer_ownership(self, new_owner: str) -> TxResult:
        return self._transact("transferOwnership", Web3.to_checksum_address(new_owner))

    def transfer_operator(self, new_operator: str) -> TxResult:
        return self._transact("transferOperator", Web3.to_checksum_address(new_operator))

    # ============================================================
    # STANDARDS
    # ============================================================

    def standards(self, opt_id: int) -> str:
        return self._call("standards", opt_id)

    def set_standard_operation(self, opt_id: int, operation: str) -> TxResult:
        return self._transact("setStandardOperation", opt_id, Web3.to_checksum_address(operation))

    # ============================================================
    # TERRA ADDRESS QUEUE
    # ============================================================

    def push_terra_addresses(self, terra_addresses: Sequence) -> TxResult:
        return self._transact("pushTerraAddresses", [to_bytes32(a) for a in terra_addresses])

    def fetch_next_terra_address(self) -> str:
        """Head of the queue as 0x-hex; raises ContractLogicError when empty."""
        return Web3.to_hex(self._call("fetchNextTerraAddress"))

    def remaining_terra_addresses(self) -> int:
        return self._call("remainingTerraAddresses")

    # ============================================================
    # BUILD
    # ============================================================

    def build(self, opt_id: int, controller: str) -> BuildResult:
        """
        Clone standard `opt_id` for `controller`, consuming the next terra address.
        The new instance is read from the first log of the receipt.
        """
        result = self._transact("build", opt_id, Web3.to_checksum_address(controller))
        if not result.success:
            return BuildResult(**vars(result))

        logs = result.receipt["logs"]
        if not logs:
            error = f"build {result.tx_hash} emitted no logs"
            logger.warning(abbreviate_hex(error))
            return BuildResult(**{**vars(result), "success": False, "error": error})

        event = self.parse_log(logs[0])
        if event is None or event["event"] != EVENT_CONTRACT_DEPLOYED:
            error = f"build {result.tx_hash}: first log is not {EVENT_CONTRACT_DEPLOYED}"
            logger.warning(abbreviate_hex(error))
            return BuildResult(**{**vars(result), "success": False, "error": error})

        args = event["args"]
        built = BuildResult(
            **vars(result),
            deployer=args["deployer"],
            terra_address=Web3.to_hex(args["terraAddress"]),
            instance=Web3.to_checksum_address(args["instance"]),
        )
        logger.info(
            f"Built standard {opt_id} → {built.instance} | "
            f"deployer={built.deployer[:10]}... | terra={built.terra_address[:12]}..."
        )
        return built

    # ============================================================
    # LOGS
    # ============================================================

    def parse_log(self, log):
        """Decode a factory log (interface.parseLog); None if no event matches."""
        for entry in self.abi:
            if entry.get("type") != "event":
                continue
            try:
                return self.contract.events[entry["name"]]().process_log(log)
            except MismatchedABI:
                continue
        return None

    def deployments(self, from_block: int = 0) -> list[dict]:
        """All ContractDeployed events, oldest first."""
        event = self.contract.events[EVENT_CONTRACT_DEPLOYED]()
        entry = next(e for e in self.abi if e.get("type") == "event" and e["name"] == EVENT_CONTRACT_DEPLOYED)
        logs = self.w3.eth.get_logs({
            "address": self.address,
            "fromBlock": from_block,
            "toBlock": "latest",
            "topics": [Web3.to_hex(Web3.keccak(text=abi_signature(entry)))],
        })
        return [event.process_log(log) for log in logs]
