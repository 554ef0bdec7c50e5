"""Dev chain node behaviour: accounts, mining, nonces, time, snapshots, RPC errors."""

import pytest
from eth_utils import keccak
from web3 import Web3

from core.factory import OperationFactory
from core.signer import Signer
from core.utils import predict_create_address, advance_time_and_block, latest_blocktime
from devchain.chain import DevChain, RPCError, DEFAULT_CHAIN_ID, DEFAULT_BALANCE_WEI
from devchain.models import OperationFactory as FactoryModel, Revert, dev_bytecode
from devchain.rpc import RPCDispatcher, METHOD_NOT_FOUND, EXECUTION_REVERTED, INVALID_PARAMS

from conftest import INSTANCE_TERRA


class TestAccounts:

    def test_funded_accounts(self, w3, chain):
        assert w3.eth.chain_id == DEFAULT_CHAIN_ID
        assert w3.eth.accounts == chain.accounts
        assert len(chain.accounts) == 10
        assert w3.eth.get_balance(chain.accounts[0]) == DEFAULT_BALANCE_WEI

    def test_keys_are_deterministic(self, chain):
        other = DevChain()
        assert other.accounts == chain.accounts
        assert chain.private_key_for(chain.accounts[3]) == chain.private_keys[3]
        assert chain.private_key_for("0x" + "00" * 20) is None


class TestMining:

    def test_one_block_per_transaction(self, w3, owner):
        start = w3.eth.block_number
        OperationFactory.deploy(w3, owner)
        assert w3.eth.block_number == start + 1

    def test_contract_address_follows_create_rule(self, w3, owner):
        nonce = w3.eth.get_transaction_count(owner.address)
        expected = predict_create_address(owner.address, nonce)
        fac = OperationFactory.deploy(w3, owner)
        assert fac.address == expected
        assert w3.eth.get_code(expected) == dev_bytecode("OperationFactory")

    def test_gas_is_charged(self, w3, owner):
        before = w3.eth.get_balance(owner.address)
        fac = OperationFactory.deploy(w3, owner)
        result = fac.push_terra_addresses([INSTANCE_TERRA])
        assert result.gas_used > 21_000
        assert w3.eth.get_balance(owner.address) < before

    def test_block_lookup_by_hash(self, w3):
        latest = w3.eth.get_block("latest")
        assert w3.eth.get_block(latest["hash"])["number"] == latest["number"]

    def test_transaction_lookup(self, w3, owner):
        fac = OperationFactory.deploy(w3, owner)
        result = fac.push_terra_addresses([INSTANCE_TERRA])
        tx = w3.eth.get_transaction(result.tx_hash)
        assert tx["from"] == owner.address
        assert tx["to"] == fac.address
        assert tx["blockNumber"] == result.block_number


class TestTransactionValidation:

    def _raw(self, w3, signer, **overrides):
        tx = {
            "to": signer.address,
            "value": 1,
            "gas": 21_000,
            "gasPrice": w3.eth.gas_price,
            "nonce": w3.eth.get_transaction_count(signer.address),
            "chainId": w3.eth.chain_id,
        }
        tx.update(overrides)
        tx = {k: v for k, v in tx.items() if v is not None}
        return bytes(w3.eth.account.sign_transaction(tx, signer.private_key).raw_transaction)

    def test_plain_transfer(self, w3, chain, owner):
        tx_hash = chain.send_raw_transaction(self._raw(w3, owner))
        assert chain.receipt(tx_hash).status == 1
        assert chain.nonce(owner.address) == 1

    def test_eip1559_transfer(self, w3, chain, owner):
        raw = self._raw(w3, owner, gasPrice=None, maxFeePerGas=2 * 10**9, maxPriorityFeePerGas=10**9)
        tx_hash = chain.send_raw_transaction(raw)
        assert chain.transaction(tx_hash).type == 2

    def test_nonce_too_low(self, w3, chain, owner):
        chain.send_raw_transaction(self._raw(w3, owner))
        with pytest.raises(RPCError, match="nonce too low"):
            chain.send_raw_transaction(self._raw(w3, owner, nonce=0, value=2))

    def test_nonce_too_high(self, w3, chain, owner):
        with pytest.raises(RPCError, match="nonce too high"):
            chain.send_raw_transaction(self._raw(w3, owner, nonce=5))

    def test_wrong_chain_id(self, w3, chain, owner):
        with pytest.raises(RPCError, match="invalid chain id"):
            chain.send_raw_transaction(self._raw(w3, owner, chainId=1))

    def test_intrinsic_gas_too_low(self, w3, chain, owner):
        with pytest.raises(RPCError, match="intrinsic gas too low"):
            chain.send_raw_transaction(self._raw(w3, owner, gas=20_000))

    def test_insufficient_funds(self, w3, chain, owner):
        with pytest.raises(RPCError, match="insufficient funds"):
            chain.send_raw_transaction(self._raw(w3, owner, value=DEFAULT_BALANCE_WEI))

    def _poor_account(self, w3, chain, owner, funds):
        poor = Signer.from_key("0x" + keccak(text="opfactory-test:poor").hex())
        chain.send_raw_transaction(self._raw(w3, owner, to=poor.address, value=funds))
        assert chain.balance(poor.address) == funds
        return poor

    def test_eip1559_balance_covers_max_fee(self, w3, chain, owner):
        poor = self._poor_account(w3, chain, owner, 21_000 * 10**9)
        raw = self._raw(w3, poor, value=0, gasPrice=None, maxFeePerGas=100 * 10**9, maxPriorityFeePerGas=10**9)
        with pytest.raises(RPCError, match="insufficient funds"):
            chain.send_raw_transaction(raw)
        assert chain.nonce(poor.address) == 0

    def test_eip1559_exact_max_fee_accepted(self, w3, chain, owner):
        poor = self._poor_account(w3, chain, owner, 21_000 * 10**9)
        raw = self._raw(w3, poor, value=0, gasPrice=None, maxFeePerGas=10**9, maxPriorityFeePerGas=10**9)
        tx_hash = chain.send_raw_transaction(raw)
        assert chain.receipt(tx_hash).status == 1
        assert chain.transaction(tx_hash).max_fee_per_gas == 10**9
        assert chain.balance(poor.address) == 0

    def test_out_of_gas_is_mined_as_failure(self, w3, chain, owner):
        fac = OperationFactory.deploy(w3, owner)
        tx = fac.contract.functions.pushTerraAddresses([bytes.fromhex(INSTANCE_TERRA[2:])]).build_transaction({
            "from": owner.address,
            "nonce": w3.eth.get_transaction_count(owner.address),
            "gas": 23_000,
            "gasPrice": w3.eth.gas_price,
            "chainId": w3.eth.chain_id,
        })
        signed = w3.eth.account.sign_transaction(tx, owner.private_key)
        tx_hash = chain.send_raw_transaction(bytes(signed.raw_transaction))

        receipt = chain.receipt(tx_hash)
        assert receipt.status == 0
        assert receipt.gas_used == 23_000
        assert "out of gas" in receipt.revert_reason
        assert fac.remaining_terra_addresses() == 0


class TestTime:

    def test_timestamps_increase(self, w3, owner):
        before = latest_blocktime(w3)
        OperationFactory.deploy(w3, owner)
        assert latest_blocktime(w3) > before

    def test_advance_time_and_block(self, w3):
        before = latest_blocktime(w3)
        start = w3.eth.block_number
        after = advance_time_and_block(w3, 3600)
        assert after >= before + 3600
        assert w3.eth.block_number == start + 1

    def test_set_next_block_timestamp(self, w3, chain):
        target = latest_blocktime(w3) + 10_000
        w3.manager.request_blocking("evm_setNextBlockTimestamp", [target])
        w3.manager.request_blocking("evm_mine", [])
        assert latest_blocktime(w3) == target

    def test_timestamp_must_move_forward(self, chain):
        with pytest.raises(RPCError):
            chain.set_next_block_timestamp(chain.latest_block.timestamp)

    def test_negative_increase_rejected(self, chain):
        with pytest.raises(RPCError):
            chain.increase_time(-1)


class TestSnapshots:

    def test_revert_restores_state(self, w3, chain, owner):
        fac = OperationFactory.deploy(w3, owner)
        snapshot = chain.snapshot()
        block = chain.block_number

        fac.push_terra_addresses([INSTANCE_TERRA])
        assert fac.remaining_terra_addresses() == 1

        assert chain.revert(snapshot) is True
        assert fac.remaining_terra_addresses() == 0
        assert chain.block_number == block

    def test_snapshot_is_consumed(self, chain):
        snapshot = chain.snapshot()
        assert chain.revert(snapshot) is True
        assert chain.revert(snapshot) is False

    def test_snapshot_over_rpc(self, w3, owner):
        snapshot = w3.manager.request_blocking("evm_snapshot", [])
        OperationFactory.deploy(w3, owner)
        assert w3.manager.request_blocking("evm_revert", [snapshot]) is True
        assert w3.eth.get_transaction_count(owner.address) == 0


class TestLogs:

    def test_get_logs_filters_by_topic(self, w3, chain, owner):
        fac = OperationFactory.deploy(w3, owner)
        ownership = keccak(text="OwnershipTransferred(address,address)")
        operator = keccak(text="OperatorTransferred(address,address)")

        assert len(chain.get_logs(address=[fac.address])) == 2
        assert len(chain.get_logs(topics=[ownership])) == 1
        assert len(chain.get_logs(topics=[[ownership, operator]])) == 2
        assert chain.get_logs(address=[owner.address]) == []

    def test_fresh_chain_has_no_logs(self, chain):
        assert chain.get_logs() == []


class TestDispatcher:

    def test_unknown_method(self, chain):
        response = RPCDispatcher(chain).handle({"jsonrpc": "2.0", "id": 1, "method": "eth_mining", "params": []})
        assert response["error"]["code"] == METHOD_NOT_FOUND

    def test_invalid_params(self, chain):
        response = RPCDispatcher(chain).handle({"id": 2, "method": "eth_getBalance", "params": []})
        assert response["error"]["code"] == INVALID_PARAMS

    def test_revert_carries_error_data(self, w3, chain, owner):
        fac = OperationFactory.deploy(w3, owner)
        calldata = fac.contract.encode_abi("fetchNextTerraAddress", [])
        response = RPCDispatcher(chain).handle({
            "id": 3,
            "method": "eth_call",
            "params": [{"to": fac.address, "data": calldata}, "latest"],
        })
        error = response["error"]
        assert error["code"] == EXECUTION_REVERTED
        assert error["message"] == "execution reverted: OperationFactory: terra address queue is empty"
        assert error["data"] == "0x" + Revert("OperationFactory: terra address queue is empty").encoded().hex()

    def test_batch(self, chain):
        responses = RPCDispatcher(chain).handle_batch([
            {"id": 1, "method": "eth_chainId", "params": []},
            {"id": 2, "method": "eth_blockNumber", "params": []},
        ])
        assert [r["id"] for r in responses] == [1, 2]
        assert responses[0]["result"] == hex(DEFAULT_CHAIN_ID)


class TestModels:

    def test_unknown_selector_reverts(self, chain):
        model = FactoryModel(chain.accounts[0])
        with pytest.raises(Revert, match="selector was not recognized"):
            model.dispatch(None, b"\x12\x34\x56\x78")

    def test_selector_table_matches_abi(self):
        selectors = FactoryModel.functions()
        build = Web3.keccak(text="build(uint256,address)")[:4]
        assert selectors[bytes(build)]["name"] == "build"
