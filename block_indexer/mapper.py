"""Pure mapping from node payloads to the esblock / estx / escontract documents.

Inputs are web3 ``AttributeDict`` objects or plain dicts carrying the JSON-RPC
field names. Nothing here performs I/O.

Quantities are never routed through ``float``: fields mapped as ``long`` are
emitted as exact integers and rejected when they do not fit 64 bits, the
8-byte block nonce is stored as its two's-complement long, and the
transaction ``value`` is emitted as a decimal string.
"""

from typing import Any, Dict, List, Mapping, Optional

from .errors import PrecisionLossError
from .schema import DOUBLE_EXACT_MAX, LONG_MAX, LONG_MIN
from .util import parse_int, to_hex


def _quantity(field: str, value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, float):
        if not value.is_integer():
            raise PrecisionLossError(field, value, "fractional value")
        if abs(value) > DOUBLE_EXACT_MAX:
            raise PrecisionLossError(field, value, "float above 2**53 is already rounded")
        return int(value)
    try:
        return parse_int(value)
    except (TypeError, ValueError) as exc:
        raise PrecisionLossError(field, value, f"not an integer quantity ({exc})") from exc


def encode_long(field: str, value: Any) -> int:
    number = _quantity(field, value)
    if not LONG_MIN <= number <= LONG_MAX:
        raise PrecisionLossError(field, value, "outside the signed 64-bit range of a long field")
    return number


def encode_uint64(field: str, value: Any) -> int:
    """Fit an unsigned 64-bit value into a signed long as its two's complement."""
    number = _quantity(field, value)
    if not 0 <= number < 2**64:
        raise PrecisionLossError(field, value, "outside the unsigned 64-bit range")
    return number - 2**64 if number > LONG_MAX else number


def encode_bignum(field: str, value: Any) -> str:
    return str(_quantity(field, value))


def _address(value: Any) -> str:
    if not value:
        return ""
    return to_hex(value)


def tx_hash_of(raw_tx: Any) -> str:
    if isinstance(raw_tx, Mapping):
        return to_hex(raw_tx.get("hash"))
    return to_hex(raw_tx)


def tx_hashes(raw_block: Mapping[str, Any]) -> List[str]:
    return [tx_hash_of(tx) for tx in raw_block.get("transactions") or []]


def is_creation(raw_tx: Mapping[str, Any]) -> bool:
    return not raw_tx.get("to")


def map_block(raw_block: Mapping[str, Any]) -> Dict[str, Any]:
    size = _quantity("size", raw_block.get("size"))
    if size > DOUBLE_EXACT_MAX:
        raise PrecisionLossError("size", size, "above 2**53 for a double field")
    return {
        "height": encode_long("height", raw_block.get("number")),
        "hash": to_hex(raw_block.get("hash")),
        "parenthash": to_hex(raw_block.get("parentHash")),
        "sha3uncles": to_hex(raw_block.get("sha3Uncles")),
        "time": encode_long("time", raw_block.get("timestamp")),
        "miner": _address(raw_block.get("miner")),
        "difficulty": encode_long("difficulty", raw_block.get("difficulty")),
        "size": size,
        "gasused": encode_long("gasused", raw_block.get("gasUsed")),
        "gaslimit": encode_long("gaslimit", raw_block.get("gasLimit")),
        "nonce": encode_uint64("nonce", raw_block.get("nonce")),
        "txs": tx_hashes(raw_block),
    }


def map_transaction(raw_tx: Mapping[str, Any], block_hash: Any) -> Dict[str, Any]:
    return {
        "thash": to_hex(raw_tx.get("hash")),
        "bhash": to_hex(block_hash),
        "from": _address(raw_tx.get("from")),
        "to": _address(raw_tx.get("to")),
        "value": encode_bignum("value", raw_tx.get("value")),
    }


def map_contract(
    raw_tx: Mapping[str, Any],
    receipt: Optional[Mapping[str, Any]],
    abi: str = "",
) -> Optional[Dict[str, Any]]:
    if not receipt or not receipt.get("contractAddress"):
        return None
    return {
        "owner": _address(raw_tx.get("from")),
        "tx": to_hex(raw_tx.get("hash")),
        "abi": abi or "",
    }


def total_difficulty(raw_block: Mapping[str, Any]) -> Optional[int]:
    value = raw_block.get("totalDifficulty")
    if value is None:
        return None
    return _quantity("totalDifficulty", value)
