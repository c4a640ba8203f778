import os
from typing import Any, Dict, List, Optional

from .util import json_dumps, load_json, log


class AbiRegistry:
    """Looks up the ABI of a freshly created contract by its address.

    ABIs come either from the ``contracts`` config section (address -> inline
    ABI list or path to a file) or from ``<abi_dir>/<address>.json``. Both raw
    ABI arrays and Hardhat artifacts (a JSON object with an ``abi`` field) are
    accepted. Unknown contracts map to an empty string.
    """

    def __init__(self, abi_dir: Optional[str] = None, contracts: Optional[Dict[str, Any]] = None):
        self.abi_dir = abi_dir
        self.contracts = {address.lower(): source for address, source in (contracts or {}).items()}
        self._cache: Dict[str, str] = {}

    def lookup(self, address: str) -> str:
        if not address:
            return ""
        key = address.lower()
        if key not in self._cache:
            abi = self._load_abi(key)
            self._cache[key] = json_dumps(abi) if abi else ""
        return self._cache[key]

    def _load_abi(self, address: str) -> Optional[List[Dict[str, Any]]]:
        source = self.contracts.get(address)
        if isinstance(source, list):
            return source
        if isinstance(source, str):
            if not os.path.exists(source):
                raise FileNotFoundError(f"ABI path not found for {address}: {source}")
            return self._extract_abi(load_json(source))

        abi_path = self._find_abi_file(address, self.abi_dir)
        if not abi_path:
            return None
        try:
            return self._extract_abi(load_json(abi_path))
        except ValueError as exc:
            log(f"WARN: unreadable ABI file {abi_path}: {exc}")
            return None

    @staticmethod
    def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
        if isinstance(abi_json, list):
            return abi_json
        if isinstance(abi_json, dict) and "abi" in abi_json:
            return abi_json.get("abi")
        return None

    @staticmethod
    def _find_abi_file(address: str, abi_dir: Optional[str]) -> Optional[str]:
        if not abi_dir or not os.path.isdir(abi_dir):
            return None
        wanted = {f"{address}.json", f"{address}.abi.json"}
        for filename in os.listdir(abi_dir):
            if filename.lower() in wanted:
                return os.path.join(abi_dir, filename)
        return None
