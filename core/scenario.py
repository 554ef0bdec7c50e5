"""
Factory Lifecycle Scenario
==========================
Runs the full owner → operator → build flow against any node and checks
the properties a correct OperationFactory deployment must satisfy:

  1. standards(code) returns the registered template
  2. fetchNextTerraAddress() returns the first pushed identifier
  3. build() by the operator emits ContractDeployed(deployer, terraAddress, instance)
     as logs[0] and consumes the identifier
  4. the template keeps its own terra address
  5. the instance holds the consumed terra address
  6. template and instance are distinct contracts

Used by `python main.py scenario` and by the test suite.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError

from core.artifacts import ArtifactError
from core.chain import DeploymentError
from core.factory import OperationFactory
from core.operation import Operation
from core.signer import Signer
from core.utils import abbreviate_hex

logger = logging.getLogger("opfactory.scenario")

TEMPLATE_TERRA_ADDRESS = "0xdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeef"
INSTANCE_TERRA_ADDRESS = "0xbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdead"
STANDARD_CODE = 0


@dataclass
class Check:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class ScenarioReport:
    checks: list[Check] = field(default_factory=list)
    operation_address: str = ""
    factory_address: str = ""
    instance_address: str = ""
    build_tx: str = ""

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    def ok(self, name: str, detail: str = "") -> None:
        self.checks.append(Check(name, True, detail))
        logger.info(f"[PASS] {name}" + (f"  → {abbreviate_hex(detail)}" if detail else ""))

    def fail(self, name: str, detail: str = "") -> None:
        self.checks.append(Check(name, False, detail))
        logger.warning(f"[FAIL] {name}" + (f"  → {abbreviate_hex(detail)}" if detail else ""))

    def expect(self, name: str, condition: bool, detail: str = "") -> bool:
        if condition:
            self.ok(name, detail)
        else:
            self.fail(name, detail)
        return condition

    def summary(self) -> str:
        lines = [f"  [{'PASS' if c.passed else 'FAIL'}] {c.name}" + (f"  → {c.detail}" if c.detail else "")
                 for c in self.checks]
        total = len(self.checks)
        passed = sum(c.passed for c in self.checks)
        lines.append(f"  {passed}/{total} checks passed")
        return "\n".join(lines)


class ScenarioAborted(Exception):
    pass


def run_lifecycle(
    w3: Web3,
    owner: Signer,
    operator: Signer,
    template_terra: str = TEMPLATE_TERRA_ADDRESS,
    instance_terra: str = INSTANCE_TERRA_ADDRESS,
    standard_code: int = STANDARD_CODE,
    artifacts_dir: Optional[Path] = None,
) -> ScenarioReport:
    """
    Deploy a template and a factory from `owner`, hand the operator role to
    `operator`, and build one instance. Never raises for contract failures;
    every step lands in the report.
    """
    report = ScenarioReport()
    try:
        _run(report, w3, owner, operator, template_terra, instance_terra, standard_code, artifacts_dir)
    except ScenarioAborted as e:
        report.fail("scenario aborted", str(e))
    except (DeploymentError, ArtifactError) as e:
        report.fail("deployment", str(e))
    return report


def _require(report: ScenarioReport, name: str, result) -> None:
    if not report.expect(name, result.success, result.error or result.tx_hash[:18]):
        raise ScenarioAborted(f"{name}: {result.error}")


def _run(report, w3, owner, operator, template_terra, instance_terra, standard_code, artifacts_dir):
    operation = Operation.deploy(w3, owner, artifacts_dir=artifacts_dir)
    report.operation_address = operation.address
    _require(report, "template initialize", operation.initialize(
        operator.address, template_terra, owner.address, owner.address,
    ))

    factory = OperationFactory.deploy(w3, owner, artifacts_dir=artifacts_dir)
    report.factory_address = factory.address
    _require(report, "transferOperator", factory.transfer_operator(operator.address))
    report.expect("operator handed over", factory.operator() == operator.address, factory.operator())

    _require(report, "setStandardOperation", factory.set_standard_operation(standard_code, operation.address))
    registered = factory.standards(standard_code)
    report.expect(f"standards({standard_code}) == template", registered == operation.address, registered)

    _require(report, "pushTerraAddresses", factory.push_terra_addresses([instance_terra]))
    head = factory.fetch_next_terra_address()
    report.expect("fetchNextTerraAddress == pushed", head == instance_terra.lower(), head)

    built = factory.connect(operator).build(standard_code, operator.address)
    report.build_tx = built.tx_hash
    if not report.expect("build by operator", built.success, built.error or built.tx_hash[:18]):
        raise ScenarioAborted(f"build: {built.error}")
    report.instance_address = built.instance

    report.expect("event deployer == operator", built.deployer == operator.address, built.deployer)
    report.expect("event terraAddress == pushed", built.terra_address == instance_terra.lower(), built.terra_address)

    try:
        next_head = factory.fetch_next_terra_address()
        report.expect("terra address consumed", next_head != instance_terra.lower(), next_head)
    except ContractLogicError:
        report.ok("terra address consumed", "queue empty")

    instance = Operation.at(w3, built.instance)
    template_value = operation.terra_address()
    instance_value = instance.terra_address()
    report.expect("template keeps its terra address", template_value == template_terra.lower(), template_value)
    report.expect("instance holds consumed terra address", instance_value == instance_terra.lower(), instance_value)
    report.expect("template != instance", operation.address != instance.address, instance.address)
