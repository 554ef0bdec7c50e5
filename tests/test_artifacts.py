"""Tests for core.artifacts loading."""

import json

import pytest

from core.abi import OPERATION_FACTORY_ABI
from core.artifacts import load_artifact, dev_artifact, ArtifactError
from core.factory import OperationFactory
from devchain.models import dev_bytecode


class TestDevArtifacts:

    def test_default_is_dev_artifact(self):
        artifact = load_artifact("OperationFactory")
        assert artifact.source == "devchain"
        assert artifact.abi == OPERATION_FACTORY_ABI
        assert artifact.bytecode == "0x" + dev_bytecode("OperationFactory").hex()

    def test_unknown_contract(self):
        with pytest.raises(ArtifactError, match="Unknown contract"):
            dev_artifact("Vault")


class TestCompiledArtifacts:

    def _dev_payload(self, name):
        artifact = dev_artifact(name)
        return {"abi": artifact.abi, "bytecode": artifact.bytecode}

    def test_hardhat_layout(self, tmp_path, w3, owner):
        path = tmp_path / "contracts" / "operation" / "OperationFactory.sol" / "OperationFactory.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps(self._dev_payload("OperationFactory")))

        artifact = load_artifact("OperationFactory", tmp_path)
        assert artifact.source == str(path)

        fac = OperationFactory.deploy(w3, owner, artifacts_dir=tmp_path)
        assert fac.owner() == owner.address

    def test_cached_layout_nested_by_name(self, tmp_path):
        payload = self._dev_payload("Operation")
        payload["bytecode"] = payload["bytecode"][2:]
        (tmp_path / "Operation.json").write_text(json.dumps({"Operation": payload}))

        artifact = load_artifact("Operation", tmp_path)
        assert artifact.bytecode.startswith("0x")

    def test_standard_json_bytecode_object(self, tmp_path):
        payload = self._dev_payload("Operation")
        payload["bytecode"] = {"object": payload["bytecode"][2:]}
        (tmp_path / "Operation.json").write_text(json.dumps(payload))

        assert load_artifact("Operation", tmp_path).bytecode == dev_artifact("Operation").bytecode

    def test_unexpected_format_skipped(self, tmp_path):
        (tmp_path / "Operation.json").write_text(json.dumps({"contractName": "Operation"}))
        with pytest.raises(ArtifactError, match="No artifact"):
            load_artifact("Operation", tmp_path)

    def test_missing(self, tmp_path):
        with pytest.raises(ArtifactError):
            load_artifact("OperationFactory", tmp_path)
