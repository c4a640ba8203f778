import json
import sys
import time
from typing import Any, Mapping

from hexbytes import HexBytes


def log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (HexBytes, bytes, bytearray)):
        return to_hex(obj)
    if isinstance(obj, set):
        return sorted(obj)
    if isinstance(obj, Mapping):
        return dict(obj)
    return str(obj)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def to_hex(value: Any) -> str:
    """Lowercase 0x-prefixed hex for HexBytes, bytes or hex strings."""
    if value is None:
        return ""
    return "0x" + bytes(HexBytes(value)).hex()


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a quantity")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(bytes(value), "big") if value else 0
    if isinstance(value, str):
        if value.startswith(("0x", "0X")):
            return int(value, 16) if len(value) > 2 else 0
        return int(value)
    return int(value)
