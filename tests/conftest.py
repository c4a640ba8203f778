"""Shared fakes: an in-memory node and an in-memory index."""

import hashlib
import threading
from typing import Any, Callable, Dict, List, Optional

import pytest

from block_indexer.cursor import CursorStore
from block_indexer.errors import TransientNetworkError

ZERO_HASH = "0x" + "00" * 32


def fake_hash(*parts: Any) -> str:
    return "0x" + hashlib.sha256("-".join(str(p) for p in parts).encode()).hexdigest()


def fake_address(name: str) -> str:
    return "0x" + hashlib.sha256(name.encode()).hexdigest()[:40]


class FakeChain:
    """Canonical chain keyed by height; forks replace a suffix."""

    def __init__(self):
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.hidden_receipts: Dict[str, int] = {}
        self.calls: List[str] = []
        self.transient_failures = 0
        self._lock = threading.Lock()

    def build(self, tip: int, fork: str = "a", start: int = 0, txs_per_block: int = 2, td_bonus: int = 0) -> None:
        for height in range(start, tip + 1):
            parent = self.blocks[height - 1]["hash"] if height > 0 else ZERO_HASH
            block_hash = fake_hash(fork, "block", height)
            txs = []
            if height > 0:
                for i in range(txs_per_block):
                    txs.append(
                        {
                            "hash": fake_hash(fork, "tx", height, i),
                            "from": fake_address(f"sender{i}"),
                            "to": fake_address(f"recipient{i}"),
                            "value": 10**18 * (i + 1),
                            "blockHash": block_hash,
                        }
                    )
            self.blocks[height] = {
                "number": height,
                "hash": block_hash,
                "parentHash": parent,
                "sha3Uncles": fake_hash("uncles"),
                "timestamp": 1_600_000_000 + height * 12,
                "miner": fake_address("miner"),
                "difficulty": 1000 + height,
                "totalDifficulty": height * 10 + td_bonus,
                "size": 540 + height,
                "gasUsed": 21000 * len(txs),
                "gasLimit": 30_000_000,
                "nonce": "0x0000000000000042",
                "transactions": txs,
            }

    def add_creation(self, height: int, contract: str, sender: str = "deployer") -> Dict[str, Any]:
        block = self.blocks[height]
        tx = {
            "hash": fake_hash(block["hash"], "create", contract),
            "from": fake_address(sender),
            "to": None,
            "value": 0,
            "blockHash": block["hash"],
        }
        block["transactions"].append(tx)
        self.receipts[tx["hash"]] = {"transactionHash": tx["hash"], "contractAddress": contract, "status": 1}
        return tx

    def latest_height(self) -> int:
        self.calls.append("latest_height")
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientNetworkError("limit exceeded")
        return max(self.blocks)

    def block_at(self, height: int) -> Optional[Dict[str, Any]]:
        self.calls.append(f"block_at:{height}")
        block = self.blocks.get(height)
        return dict(block) if block is not None else None

    def block_by_hash(self, block_hash: str) -> Optional[Dict[str, Any]]:
        for block in self.blocks.values():
            if block["hash"] == block_hash:
                return dict(block)
        return None

    def receipt_of(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            if self.hidden_receipts.get(tx_hash, 0) > 0:
                self.hidden_receipts[tx_hash] -= 1
                return None
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            return {"transactionHash": tx_hash, "contractAddress": None, "status": 1}
        return dict(receipt)


class FakeIndexer:
    def __init__(self):
        self.docs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.batches: List[list] = []
        self.transient_failures = 0
        self.on_write: Optional[Callable[[list], None]] = None

    def bulk_write(self, actions: list) -> int:
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientNetworkError("index unavailable")
        self.batches.append(list(actions))
        for action in actions:
            bucket = self.docs.setdefault(action.index, {})
            if action.op == "index":
                bucket[action.doc_id] = dict(action.body)
            else:
                bucket.pop(action.doc_id, None)
        if self.on_write is not None:
            self.on_write(actions)
        return len(actions)

    def get_document(self, index: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        return self.docs.get(index, {}).get(str(doc_id))

    def count(self, index: str) -> int:
        return len(self.docs.get(index, {}))


class FakeIndexManager:
    def __init__(self, error: Optional[Exception] = None):
        self.calls = 0
        self.error = error

    def ensure_indices(self) -> List[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return []


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


TEST_CONFIG = {
    "batch_size": 10,
    "lag_threshold": 5,
    "poll_interval": 0,
    "backoff_base": 1,
    "max_backoff": 8,
    "max_attempts": 4,
    "call_timeout": 5,
    "max_workers": 4,
}


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "sync.db")


@pytest.fixture
def store(db_path):
    s = CursorStore(db_path)
    s.open()
    yield s
    s.close()
