"""
OperationFactory lifecycle on the dev chain.

Covers:
- the full register → push → build flow and the ContractDeployed log
- FIFO consumption of terra addresses across builds
- access control on every state-changing function
- failure paths leave the factory untouched
- clones are EIP-1167 proxies with their own storage
"""

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError

from core.abi import ZERO_ADDRESS
from core.factory import OperationFactory
from core.operation import Operation
from core.signer import Signer
from devchain.models import eip1167_target

from conftest import TEMPLATE_TERRA, INSTANCE_TERRA, SECOND_TERRA, THIRD_TERRA


class TestLifecycle:
    """The end-to-end flow a deployment script runs."""

    def test_works_well(self, w3, owner, controller, operation, factory):
        assert factory.standards(0) == operation.address

        assert factory.push_terra_addresses([INSTANCE_TERRA]).success
        assert factory.fetch_next_terra_address() == INSTANCE_TERRA

        result = factory.connect(controller).build(0, controller.address)
        assert result.success, result.error
        assert result.deployer == controller.address
        assert result.terra_address == INSTANCE_TERRA

        instance = Operation.at(w3, result.instance)
        assert operation.terra_address() == TEMPLATE_TERRA
        assert instance.terra_address() == INSTANCE_TERRA
        assert instance.address != operation.address

    def test_build_event_is_first_log(self, controller, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        result = factory.connect(controller).build(0, controller.address)

        logs = result.receipt["logs"]
        assert len(logs) == 1
        assert logs[0]["address"] == factory.address
        event = factory.parse_log(logs[0])
        assert event["event"] == "ContractDeployed"
        assert event["args"]["instance"] == result.instance

    def test_instance_initialized_from_build(self, w3, owner, controller, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        result = factory.connect(controller).build(0, controller.address)

        instance = Operation.at(w3, result.instance)
        assert instance.controller() == controller.address
        assert instance.owner() == owner.address
        assert instance.operator() == controller.address

    def test_instance_cannot_be_reinitialized(self, w3, owner, controller, stranger, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        result = factory.connect(controller).build(0, controller.address)

        instance = Operation.at(w3, result.instance, signer=stranger)
        again = instance.initialize(stranger.address, SECOND_TERRA, stranger.address, stranger.address)
        assert not again.success
        assert "already initialized" in again.error
        assert instance.terra_address() == INSTANCE_TERRA

    def test_deployments_history(self, controller, factory):
        factory.push_terra_addresses([INSTANCE_TERRA, SECOND_TERRA])
        first = factory.connect(controller).build(0, controller.address)
        second = factory.connect(controller).build(0, controller.address)

        events = factory.deployments()
        assert [e["args"]["instance"] for e in events] == [first.instance, second.instance]
        assert [Web3.to_hex(e["args"]["terraAddress"]) for e in events] == [INSTANCE_TERRA, SECOND_TERRA]


class TestTerraAddressQueue:

    def test_fifo_across_builds(self, w3, controller, factory):
        factory.push_terra_addresses([INSTANCE_TERRA, SECOND_TERRA])
        factory.push_terra_addresses([THIRD_TERRA])
        assert factory.remaining_terra_addresses() == 3

        op = factory.connect(controller)
        consumed = [op.build(0, controller.address).terra_address for _ in range(3)]
        assert consumed == [INSTANCE_TERRA, SECOND_TERRA, THIRD_TERRA]
        assert factory.remaining_terra_addresses() == 0

    def test_fetch_is_read_only(self, factory):
        factory.push_terra_addresses([INSTANCE_TERRA, SECOND_TERRA])
        assert factory.fetch_next_terra_address() == INSTANCE_TERRA
        assert factory.fetch_next_terra_address() == INSTANCE_TERRA
        assert factory.remaining_terra_addresses() == 2

    def test_fetch_on_empty_queue_reverts(self, factory):
        with pytest.raises(ContractLogicError, match="queue is empty"):
            factory.fetch_next_terra_address()

    def test_operator_can_push(self, controller, factory):
        assert factory.connect(controller).push_terra_addresses([INSTANCE_TERRA]).success
        assert factory.fetch_next_terra_address() == INSTANCE_TERRA

    def test_stranger_cannot_push(self, stranger, factory):
        result = factory.connect(stranger).push_terra_addresses([INSTANCE_TERRA])
        assert not result.success
        assert "neither owner nor operator" in result.error
        assert factory.remaining_terra_addresses() == 0

    def test_push_accepts_bytes(self, factory):
        assert factory.push_terra_addresses([bytes.fromhex(SECOND_TERRA[2:])]).success
        assert factory.fetch_next_terra_address() == SECOND_TERRA


class TestBuildFailures:
    """Every failing build is rejected before a transaction is sent and changes nothing."""

    def test_owner_cannot_build(self, owner, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        result = factory.connect(owner).build(0, owner.address)
        assert not result.success
        assert "not the operator" in result.error
        assert result.instance == ""
        assert factory.remaining_terra_addresses() == 1

    def test_empty_queue(self, controller, factory):
        result = factory.connect(controller).build(0, controller.address)
        assert not result.success
        assert "queue is empty" in result.error

    def test_unregistered_standard(self, controller, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        result = factory.connect(controller).build(7, controller.address)
        assert not result.success
        assert "not registered" in result.error
        assert factory.fetch_next_terra_address() == INSTANCE_TERRA

    def test_mined_revert_leaves_state(self, w3, chain, controller, factory):
        """A build forced on-chain past estimation still rolls back."""
        tx = factory.contract.functions.build(0, controller.address).build_transaction({
            "from": controller.address,
            "nonce": w3.eth.get_transaction_count(controller.address),
            "gas": 300_000,
            "gasPrice": w3.eth.gas_price,
            "chainId": w3.eth.chain_id,
        })
        signed = w3.eth.account.sign_transaction(tx, controller.private_key)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash)

        assert receipt["status"] == 0
        assert receipt["logs"] == []
        assert "queue is empty" in chain.receipt(bytes(tx_hash)).revert_reason
        assert w3.eth.get_transaction_count(controller.address) == tx["nonce"] + 1
        assert factory.remaining_terra_addresses() == 0

    def test_revert_after_clone_rolls_back(self, w3, chain, controller, factory):
        """
        Standard 1 points at the factory itself: build pops the queue and clones,
        then the clone's initialize call reverts. None of it may stick.
        """
        assert factory.set_standard_operation(1, factory.address).success
        factory.push_terra_addresses([INSTANCE_TERRA])
        factory_nonce = chain.nonce(factory.address)
        contracts = len(chain.world.contracts)

        tx = factory.contract.functions.build(1, controller.address).build_transaction({
            "from": controller.address,
            "nonce": w3.eth.get_transaction_count(controller.address),
            "gas": 500_000,
            "gasPrice": w3.eth.gas_price,
            "chainId": w3.eth.chain_id,
        })
        signed = w3.eth.account.sign_transaction(tx, controller.private_key)
        receipt = w3.eth.wait_for_transaction_receipt(w3.eth.send_raw_transaction(signed.raw_transaction))

        assert receipt["status"] == 0
        assert receipt["logs"] == []
        assert "has no function initialize" in chain.receipt(bytes(receipt["transactionHash"])).revert_reason
        assert factory.remaining_terra_addresses() == 1
        assert factory.fetch_next_terra_address() == INSTANCE_TERRA
        assert chain.nonce(factory.address) == factory_nonce
        assert len(chain.world.contracts) == contracts
        assert w3.eth.get_transaction_count(controller.address) == tx["nonce"] + 1


class TestAccessControl:

    def test_roles_after_deploy(self, w3, owner):
        fac = OperationFactory.deploy(w3, owner)
        assert fac.owner() == owner.address
        assert fac.operator() == owner.address
        assert fac.standards(0) == ZERO_ADDRESS

    def test_stranger_cannot_set_standard(self, stranger, operation, factory):
        result = factory.connect(stranger).set_standard_operation(1, operation.address)
        assert not result.success
        assert "not the owner" in result.error
        assert factory.standards(1) == ZERO_ADDRESS

    def test_operator_cannot_set_standard(self, controller, operation, factory):
        result = factory.connect(controller).set_standard_operation(1, operation.address)
        assert not result.success

    def test_stranger_cannot_transfer_operator(self, stranger, controller, factory):
        result = factory.connect(stranger).transfer_operator(stranger.address)
        assert not result.success
        assert factory.operator() == controller.address

    def test_zero_operator_rejected(self, factory):
        result = factory.transfer_operator(ZERO_ADDRESS)
        assert not result.success
        assert "zero address" in result.error

    def test_transfer_ownership(self, stranger, operation, factory):
        assert factory.transfer_ownership(stranger.address).success
        assert factory.owner() == stranger.address
        assert not factory.set_standard_operation(1, operation.address).success
        assert factory.connect(stranger).set_standard_operation(1, operation.address).success

    def test_new_operator_takes_over_build(self, owner, controller, stranger, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        assert factory.transfer_operator(stranger.address).success

        assert not factory.connect(controller).build(0, controller.address).success
        result = factory.connect(stranger).build(0, controller.address)
        assert result.success
        assert result.deployer == stranger.address

    def test_write_without_signer(self, w3, factory):
        read_only = OperationFactory.at(w3, factory.address)
        with pytest.raises(ValueError, match="no signer"):
            read_only.push_terra_addresses([INSTANCE_TERRA])


class TestClones:

    def test_instance_is_minimal_proxy(self, controller, operation, factory):
        factory.push_terra_addresses([INSTANCE_TERRA])
        result = factory.connect(controller).build(0, controller.address)

        instance_code = Operation.at(factory.w3, result.instance).code()
        assert eip1167_target(instance_code) == operation.address
        assert eip1167_target(operation.code()) is None

    def test_instances_have_distinct_addresses(self, controller, factory):
        factory.push_terra_addresses([INSTANCE_TERRA, SECOND_TERRA])
        op = factory.connect(controller)
        first = op.build(0, controller.address)
        second = op.build(0, controller.address)
        assert first.instance != second.instance

    def test_standard_can_be_replaced(self, w3, owner, controller, factory):
        replacement = Operation.deploy(w3, owner)
        assert factory.set_standard_operation(0, replacement.address).success
        factory.push_terra_addresses([INSTANCE_TERRA])

        result = factory.connect(controller).build(0, controller.address)
        assert eip1167_target(Operation.at(w3, result.instance).code()) == replacement.address


class TestUnlockedAccounts:
    """eth_sendTransaction path: signers without a private key."""

    def test_build_via_node_accounts(self, w3, chain):
        owner = Signer(address=chain.accounts[0])
        controller = Signer(address=chain.accounts[1])
        assert not owner.can_sign

        template = Operation.deploy(w3, owner)
        template.initialize(controller.address, TEMPLATE_TERRA, owner.address, owner.address)
        fac = OperationFactory.deploy(w3, owner)
        fac.transfer_operator(controller.address)
        fac.set_standard_operation(0, template.address)
        fac.push_terra_addresses([INSTANCE_TERRA])

        result = fac.connect(controller).build(0, controller.address)
        assert result.success, result.error
        assert result.terra_address == INSTANCE_TERRA
