from typing import Any, Dict, NamedTuple

BLOCK_INDEX = "esblock"
TX_INDEX = "estx"
CONTRACT_INDEX = "escontract"

INDEX_SETTINGS: Dict[str, Any] = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
}

# Signed 64-bit bounds of an Elasticsearch `long`.
LONG_MAX = 2**63 - 1
LONG_MIN = -(2**63)
# Largest integer a `double` holds exactly.
DOUBLE_EXACT_MAX = 2**53


class IndexSpec(NamedTuple):
    name: str
    doc_type: str
    properties: Dict[str, Dict[str, str]]

    def mappings(self) -> Dict[str, Any]:
        return {"properties": {field: dict(body) for field, body in self.properties.items()}}


BLOCK_SPEC = IndexSpec(
    BLOCK_INDEX,
    "block",
    {
        "hash": {"type": "keyword"},
        "height": {"type": "long"},
        "sha3uncles": {"type": "text"},
        "time": {"type": "long"},
        "miner": {"type": "text"},
        "nonce": {"type": "long"},
        "difficulty": {"type": "long"},
        "size": {"type": "double"},
        "gaslimit": {"type": "long"},
        "gasused": {"type": "long"},
        "txs": {"type": "keyword"},
    },
)

TX_SPEC = IndexSpec(
    TX_INDEX,
    "tx",
    {
        "thash": {"type": "keyword"},
        "bhash": {"type": "keyword"},
        "from": {"type": "keyword"},
        "to": {"type": "keyword"},
        "value": {"type": "double"},
    },
)

CONTRACT_SPEC = IndexSpec(
    CONTRACT_INDEX,
    "contract",
    {
        "owner": {"type": "keyword"},
        "tx": {"type": "text"},
        "abi": {"type": "text"},
    },
)

ALL_SPECS = (BLOCK_SPEC, TX_SPEC, CONTRACT_SPEC)


def field_type(spec: IndexSpec, field: str) -> str:
    return spec.properties.get(field, {}).get("type", "")
