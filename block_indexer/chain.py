from typing import Any, Callable, Dict, Optional, Tuple, Union

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound, Web3RPCError

from .errors import TransientNetworkError

_TRANSPORT_ERRORS = (requests.exceptions.RequestException, OSError)

# JSON-RPC errors that load-balanced or rate-limited nodes return for requests
# that succeed when repeated.
RETRYABLE_RPC_CODES = frozenset({-32005, 429})
RETRYABLE_RPC_MESSAGES = (
    "header not found",
    "limit exceeded",
    "rate limit",
    "too many requests",
    "timed out",
    "timeout",
    "try again",
)


def _plain(value: Any) -> Any:
    if isinstance(value, HexBytes):
        return value
    if hasattr(value, "items"):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _rpc_error(exc: Exception) -> Tuple[Optional[int], str]:
    payload: Any = getattr(exc, "rpc_response", None)
    if isinstance(payload, dict):
        payload = payload.get("error", payload)
    elif exc.args and isinstance(exc.args[0], dict):
        payload = exc.args[0]
    if isinstance(payload, dict):
        code = payload.get("code")
        return (code if isinstance(code, int) else None), str(payload.get("message", exc))
    return None, str(exc)


def is_retryable_rpc_error(exc: Exception) -> bool:
    code, message = _rpc_error(exc)
    if code in RETRYABLE_RPC_CODES:
        return True
    msg = message.lower()
    return any(fragment in msg for fragment in RETRYABLE_RPC_MESSAGES)


class ChainReader:
    """Read-only view of the node. Callers own the retry policy."""

    def __init__(self, w3: Web3):
        self.w3 = w3

    @classmethod
    def from_url(cls, rpc_http: str, timeout: float = 30) -> "ChainReader":
        return cls(Web3(Web3.HTTPProvider(rpc_http, request_kwargs={"timeout": timeout})))

    def latest_height(self) -> int:
        return int(self._rpc("eth_blockNumber", lambda: self.w3.eth.block_number))

    def block_at(self, height: int) -> Optional[Dict[str, Any]]:
        return self._get_block(height)

    def block_by_hash(self, block_hash: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        return self._get_block(HexBytes(block_hash))

    def receipt_of(self, tx_hash: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        try:
            receipt = self._rpc(
                "eth_getTransactionReceipt", lambda: self.w3.eth.get_transaction_receipt(HexBytes(tx_hash))
            )
        except TransactionNotFound:
            return None
        return _plain(receipt) if receipt is not None else None

    def _get_block(self, identifier: Any) -> Optional[Dict[str, Any]]:
        try:
            block = self._rpc(
                f"eth_getBlock({identifier!r})", lambda: self.w3.eth.get_block(identifier, full_transactions=True)
            )
        except BlockNotFound:
            return None
        return _plain(block) if block is not None else None

    @staticmethod
    def _rpc(what: str, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except _TRANSPORT_ERRORS as exc:
            raise TransientNetworkError(f"{what} failed: {exc}") from exc
        except (Web3RPCError, ValueError) as exc:
            if is_retryable_rpc_error(exc):
                raise TransientNetworkError(f"{what} failed: {exc}") from exc
            raise
