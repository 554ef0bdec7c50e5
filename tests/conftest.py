"""Shared fixtures: a fresh dev chain per test, signers, deployed contracts."""

import pytest
from web3 import Web3

from core.factory import OperationFactory
from core.operation import Operation
from core.signer import Signer
from devchain.chain import DevChain
from devchain.provider import DevChainProvider

TEMPLATE_TERRA = "0xdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeef"
INSTANCE_TERRA = "0xbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdead"
SECOND_TERRA = "0x" + "11" * 32
THIRD_TERRA = "0x" + "22" * 32


@pytest.fixture()
def chain() -> DevChain:
    return DevChain(genesis_timestamp=1_700_000_000)


@pytest.fixture()
def w3(chain: DevChain) -> Web3:
    return Web3(DevChainProvider(chain))


@pytest.fixture()
def owner(chain: DevChain) -> Signer:
    return Signer.from_key(chain.private_keys[0])


@pytest.fixture()
def controller(chain: DevChain) -> Signer:
    return Signer.from_key(chain.private_keys[1])


@pytest.fixture()
def stranger(chain: DevChain) -> Signer:
    return Signer.from_key(chain.private_keys[2])


@pytest.fixture()
def operation(w3: Web3, owner: Signer, controller: Signer) -> Operation:
    """Template deployed and initialized by the owner."""
    op = Operation.deploy(w3, owner)
    result = op.initialize(controller.address, TEMPLATE_TERRA, owner.address, owner.address)
    assert result.success, result.error
    return op


@pytest.fixture()
def factory(w3: Web3, owner: Signer, controller: Signer, operation: Operation) -> OperationFactory:
    """Factory with the controller as operator and the template under code 0."""
    fac = OperationFactory.deploy(w3, owner)
    assert fac.transfer_operator(controller.address).success
    assert fac.set_standard_operation(0, operation.address).success
    return fac
