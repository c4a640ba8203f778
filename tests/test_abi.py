import json

import pytest

from block_indexer.abi import AbiRegistry

ADDRESS = "0x" + "ab" * 20


def test_hardhat_artifact_in_abi_dir(tmp_path):
    artifact = {"contractName": "Token", "abi": [{"type": "event", "name": "Transfer"}]}
    (tmp_path / f"{ADDRESS.upper().replace('0X', '0x')}.json").write_text(json.dumps(artifact))

    abi = AbiRegistry(str(tmp_path)).lookup(ADDRESS)

    assert json.loads(abi) == artifact["abi"]


def test_inline_abi_from_config():
    registry = AbiRegistry(None, {ADDRESS.upper().replace("0X", "0x"): [{"type": "constructor"}]})
    assert json.loads(registry.lookup(ADDRESS)) == [{"type": "constructor"}]


def test_unknown_contract_has_empty_abi(tmp_path):
    assert AbiRegistry(str(tmp_path)).lookup(ADDRESS) == ""
    assert AbiRegistry(str(tmp_path / "missing")).lookup(ADDRESS) == ""


def test_configured_path_must_exist(tmp_path):
    registry = AbiRegistry(None, {ADDRESS: str(tmp_path / "nope.json")})
    with pytest.raises(FileNotFoundError):
        registry.lookup(ADDRESS)
