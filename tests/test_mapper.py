import pytest
from hexbytes import HexBytes

from block_indexer.errors import PrecisionLossError
from block_indexer.mapper import encode_bignum, encode_long, map_block, map_contract, map_transaction

BLOCK_HASH = "0x" + "AB" * 32


def _raw_block(**overrides):
    raw = {
        "number": 3,
        "hash": HexBytes(BLOCK_HASH),
        "parentHash": "0x" + "11" * 32,
        "sha3Uncles": "0x" + "22" * 32,
        "timestamp": 1_600_000_036,
        "miner": "0xD24400ae8BfEBb18cA49Be86258a3C749cf46853",
        "difficulty": 131072,
        "size": 1024,
        "gasUsed": "0x5208",
        "gasLimit": 8_000_000,
        "nonce": HexBytes("0x00000000000000ff"),
        "transactions": [{"hash": "0x" + "01" * 32}, HexBytes("0x" + "02" * 32)],
    }
    raw.update(overrides)
    return raw


def test_map_block_fields():
    doc = map_block(_raw_block())
    assert doc["height"] == 3
    assert doc["hash"] == BLOCK_HASH.lower()
    assert doc["parenthash"] == "0x" + "11" * 32
    assert doc["miner"] == "0xd24400ae8bfebb18ca49be86258a3c749cf46853"
    assert doc["gasused"] == 21000
    assert doc["nonce"] == 255
    assert doc["size"] == 1024
    assert doc["txs"] == ["0x" + "01" * 32, "0x" + "02" * 32]


def test_map_block_rejects_difficulty_beyond_long():
    with pytest.raises(PrecisionLossError) as err:
        map_block(_raw_block(difficulty=2**63))
    assert err.value.field == "difficulty"


@pytest.mark.parametrize(
    "nonce, stored",
    [
        ("0xffffffffffffffff", -1),
        ("0xa1b2c3d4e5f60718", 0xA1B2C3D4E5F60718 - 2**64),
        ("0x7fffffffffffffff", 2**63 - 1),
    ],
)
def test_nonce_keeps_all_64_bits(nonce, stored):
    doc = map_block(_raw_block(nonce=nonce))
    assert doc["nonce"] == stored
    assert doc["nonce"] % 2**64 == int(nonce, 16)


def test_nonce_wider_than_8_bytes_is_rejected():
    with pytest.raises(PrecisionLossError):
        map_block(_raw_block(nonce=2**64))


def test_transaction_value_is_lossless():
    raw_tx = {
        "hash": "0x" + "03" * 32,
        "from": "0x" + "aa" * 20,
        "to": "0x" + "bb" * 20,
        "value": 123456789012345678901234567890,
    }
    doc = map_transaction(raw_tx, BLOCK_HASH)
    assert doc["value"] == "123456789012345678901234567890"
    assert int(doc["value"]) == 123456789012345678901234567890
    assert doc["bhash"] == BLOCK_HASH.lower()


def test_contract_creation_has_empty_recipient():
    doc = map_transaction({"hash": "0x" + "04" * 32, "from": "0x" + "aa" * 20, "to": None, "value": "0x0"}, BLOCK_HASH)
    assert doc["to"] == ""
    assert doc["value"] == "0"


@pytest.mark.parametrize("value", [1.5, 1.2345678901234568e29])
def test_float_quantities_fail_instead_of_truncating(value):
    with pytest.raises(PrecisionLossError):
        encode_bignum("value", value)


def test_integral_small_float_is_accepted():
    assert encode_bignum("value", 1000.0) == "1000"
    assert encode_long("gasused", "0x10") == 16


def test_map_contract_only_for_creations():
    raw_tx = {"hash": "0x" + "05" * 32, "from": "0x" + "CC" * 20, "to": None}
    assert map_contract(raw_tx, {"contractAddress": None}) is None
    assert map_contract(raw_tx, None) is None

    doc = map_contract(raw_tx, {"contractAddress": "0x" + "dd" * 20}, abi='[{"type": "event"}]')
    assert doc == {"owner": "0x" + "cc" * 20, "tx": "0x" + "05" * 32, "abi": '[{"type": "event"}]'}
