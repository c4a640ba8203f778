"""Sync engine: moves the cursor along the node's canonical chain.

INITIALIZING -> CATCHING_UP <-> FOLLOWING -> REORG_RECOVERY -> CATCHING_UP,
with FATAL as the terminal state. One batch is in flight at a time; the
cursor is committed only after the index acknowledged the batch.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .abi import AbiRegistry
from .config import with_defaults
from .cursor import Cursor, CursorStore, JournalEntry
from .errors import (
    FatalSyncError,
    IndexWriteError,
    NotFoundError,
    ReorgDetectedError,
    TransientNetworkError,
)
from .heads import HeadWatcher
from .index import IndexAction, delete_action, index_action
from .mapper import (
    is_creation,
    map_block,
    map_contract,
    map_transaction,
    total_difficulty,
    tx_hash_of,
)
from .schema import BLOCK_INDEX, CONTRACT_INDEX, TX_INDEX
from .util import log, to_hex


class SyncState(str, Enum):
    INITIALIZING = "initializing"
    CATCHING_UP = "catching_up"
    FOLLOWING = "following"
    REORG_RECOVERY = "reorg_recovery"
    FATAL = "fatal"


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class SyncEngine:
    def __init__(
        self,
        reader: Any,
        indexer: Any,
        index_manager: Any,
        store: CursorStore,
        config: Optional[Dict[str, Any]] = None,
        abi_registry: Optional[AbiRegistry] = None,
        head_watcher: Optional[HeadWatcher] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        cfg = with_defaults(config or {})
        self.reader = reader
        self.indexer = indexer
        self.index_manager = index_manager
        self.store = store
        self.abi_registry = abi_registry
        self.head_watcher = head_watcher or HeadWatcher(None)
        self._sleep = sleep

        self.start_block = int(cfg["start_block"])
        self.batch_size = int(cfg["batch_size"])
        self.lag_threshold = int(cfg["lag_threshold"])
        self.poll_interval = float(cfg["poll_interval"])
        self.call_timeout = float(cfg["call_timeout"])
        self.max_attempts = int(cfg["max_attempts"])
        self.backoff_base = float(cfg["backoff_base"])
        self.max_backoff = float(cfg["max_backoff"])
        self.max_reorg_depth = int(cfg["max_reorg_depth"])
        self._workers = asyncio.Semaphore(int(cfg["max_workers"]))

        self.state = SyncState.INITIALIZING
        self.cursor: Optional[Cursor] = None
        self._stop_requested = False
        self._deferred_reorg: Optional[int] = None

    def request_stop(self) -> None:
        """Stop after the batch in flight, if any, has been committed."""
        self._stop_requested = True

    def _enter(self, state: SyncState) -> None:
        if state != self.state:
            log(f"Sync state {self.state.value} -> {state.value}")
            self.state = state

    async def run(self, until_synced: bool = False) -> Optional[Cursor]:
        await self.head_watcher.start()
        try:
            await self.initialize()
            while not self._stop_requested:
                if not await self.step(until_synced):
                    break
        except FatalSyncError as exc:
            self._enter(SyncState.FATAL)
            log(f"ERROR: {exc}")
            raise
        except Exception as exc:
            self._enter(SyncState.FATAL)
            log(f"ERROR: {_describe(exc)}")
            raise FatalSyncError(_describe(exc)) from exc
        finally:
            await self.head_watcher.stop()
        log(f"Sync stopped at height {self.cursor.height if self.cursor else None}")
        return self.cursor

    async def initialize(self) -> Cursor:
        self._enter(SyncState.INITIALIZING)
        created = await self._call("ensure indices", self.index_manager.ensure_indices)
        if created:
            log(f"Created indices: {', '.join(created)}")

        cursor = self.store.load()
        if cursor is None:
            height = max(self.start_block - 1, 0)
            anchor = await self._call(f"block {height}", self.reader.block_at, height)
            cursor = Cursor(height, to_hex(anchor.get("hash")) if anchor else None)
            self.store.initialize(cursor)
            log(f"No cursor found, starting after height {height}")
        self.cursor = cursor
        await self._retract_pending()

        log(f"Resuming from height {cursor.height} ({cursor.hash})")
        self._enter(SyncState.CATCHING_UP)
        return cursor

    async def step(self, until_synced: bool = False) -> bool:
        try:
            if self.state == SyncState.CATCHING_UP:
                await self._catch_up()
            elif self.state == SyncState.FOLLOWING:
                return await self._follow(until_synced)
            elif self.state == SyncState.REORG_RECOVERY:
                await self._recover()
            else:
                raise FatalSyncError(f"step() called in state {self.state.value}")
        except ReorgDetectedError as exc:
            log(f"WARN: {exc}")
            self._enter(SyncState.REORG_RECOVERY)
        except NotFoundError as exc:
            log(f"{exc}; waiting for the node")
            await self._wait()
        return True

    async def _catch_up(self) -> None:
        latest = await self._call("latest height", self.reader.latest_height)
        if latest - self.cursor.height <= self.lag_threshold:
            self._enter(SyncState.FOLLOWING)
            return
        await self._index_next(min(self.cursor.height + self.batch_size, latest))

    async def _follow(self, until_synced: bool) -> bool:
        latest = await self._call("latest height", self.reader.latest_height)
        if latest - self.cursor.height > self.lag_threshold:
            self._enter(SyncState.CATCHING_UP)
            return True
        if latest > self.cursor.height:
            await self._index_next(min(self.cursor.height + self.batch_size, latest))
            return True

        await self._check_tip(latest)
        if until_synced:
            return False
        await self._wait()
        return True

    async def _check_tip(self, height: int) -> None:
        entry = self.store.entry_at(height)
        if entry is None:
            return
        block = await self._call(f"block {height}", self.reader.block_at, height)
        if block is None:
            return
        node_hash = to_hex(block.get("hash"))
        if node_hash != entry.hash:
            raise ReorgDetectedError(height, entry.hash, node_hash)

    async def _wait(self) -> None:
        await self.head_watcher.wait(self.poll_interval)

    async def _index_next(self, end: int) -> None:
        start = self.cursor.height + 1
        blocks = await self._fetch_range(start, end, self.cursor.hash)
        if not blocks:
            raise NotFoundError(f"block {start} not available yet")
        actions, entries = await self._build_batch(blocks)
        self.store.stage(entries)
        await asyncio.shield(self._write_and_advance(actions, entries))

    async def _write_and_advance(self, actions: List[IndexAction], entries: List[JournalEntry]) -> None:
        first, last = entries[0], entries[-1]
        await self._write(actions, f"index blocks {first.height}-{last.height}")
        cursor = Cursor(last.height, last.hash)
        self.store.commit(cursor)
        self.cursor = cursor
        self.store.prune(cursor.height - self.max_reorg_depth)
        log(f"Indexed blocks {first.height}-{last.height} ({len(actions)} documents), cursor at {last.hash}")

    async def _fetch_range(self, start: int, end: int, parent: Optional[str]) -> List[Dict[str, Any]]:
        blocks: List[Dict[str, Any]] = []
        expected = parent
        for height in range(start, end + 1):
            block = await self._call(f"block {height}", self.reader.block_at, height)
            if block is None:
                break
            parent_hash = to_hex(block.get("parentHash"))
            if expected and parent_hash != expected:
                if not blocks:
                    raise ReorgDetectedError(height, expected, parent_hash)
                log(f"WARN: chain moved while fetching height {height}, truncating batch")
                break
            blocks.append(block)
            expected = to_hex(block.get("hash"))
        return blocks

    async def _build_batch(self, blocks: List[Dict[str, Any]]) -> Tuple[List[IndexAction], List[JournalEntry]]:
        creations = []
        for block in blocks:
            for tx in block.get("transactions") or []:
                if not isinstance(tx, Mapping):
                    raise FatalSyncError(f"block {block.get('number')} was returned without transaction bodies")
                if is_creation(tx):
                    creations.append(tx)

        results = await asyncio.gather(*(self._contract_for(tx) for tx in creations), return_exceptions=True)
        contracts: Dict[str, Dict[str, Any]] = {}
        for result in results:
            if isinstance(result, BaseException):
                raise result
            if result:
                contracts[result["tx"]] = result

        actions: List[IndexAction] = []
        entries: List[JournalEntry] = []
        for block in blocks:
            block_doc = map_block(block)
            actions.append(index_action(BLOCK_INDEX, block_doc["height"], block_doc))
            created = []
            for tx in block.get("transactions") or []:
                tx_doc = map_transaction(tx, block_doc["hash"])
                actions.append(index_action(TX_INDEX, tx_doc["thash"], tx_doc))
                contract_doc = contracts.get(tx_doc["thash"])
                if contract_doc:
                    actions.append(index_action(CONTRACT_INDEX, contract_doc["tx"], contract_doc))
                    created.append(contract_doc["tx"])
            entries.append(
                JournalEntry(
                    height=block_doc["height"],
                    hash=block_doc["hash"],
                    parent_hash=block_doc["parenthash"],
                    total_difficulty=total_difficulty(block),
                    tx_hashes=block_doc["txs"],
                    contract_txs=created,
                )
            )
        return actions, entries

    async def _contract_for(self, tx: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        tx_hash = tx_hash_of(tx)
        async with self._workers:
            receipt = await self._call(f"receipt {tx_hash}", self.reader.receipt_of, tx_hash)
            if receipt is None:
                raise NotFoundError(f"receipt for {tx_hash} not available yet")
            address = receipt.get("contractAddress")
            abi = ""
            if address and self.abi_registry is not None:
                abi = await asyncio.to_thread(self.abi_registry.lookup, to_hex(address))
        return map_contract(tx, receipt, abi)

    async def _recover(self) -> None:
        tip = await self._call("latest height", self.reader.latest_height)
        start = min(self.cursor.height, tip)
        floor = max(self.cursor.height - self.max_reorg_depth, 0)

        ancestor: Optional[Cursor] = None
        node_tip: Optional[Dict[str, Any]] = None
        height = start
        while height >= floor:
            entry = self.store.entry_at(height)
            if entry is None:
                break
            block = await self._call(f"block {height}", self.reader.block_at, height)
            if height == start:
                node_tip = block
            if block is not None and to_hex(block.get("hash")) == entry.hash:
                ancestor = Cursor(height, entry.hash)
                break
            height -= 1

        if ancestor is None:
            raise FatalSyncError(
                f"no common ancestor within {self.max_reorg_depth} blocks below height {self.cursor.height} "
                f"(journal reaches back to height {self.store.oldest_height()})"
            )
        if ancestor.height == self.cursor.height:
            log(f"Indexed tip {self.cursor.height} is canonical again, nothing to retract")
            self._deferred_reorg = None
            self._enter(SyncState.CATCHING_UP)
            return
        if await self._defer_lighter_branch(node_tip):
            return

        stale = self.store.entries_above(ancestor.height)
        await self._retract(stale)
        self.store.rewind(ancestor)
        log(
            f"Reorg recovered: retracted {len(stale)} blocks above {ancestor.height}, "
            f"cursor {self.cursor.height} -> {ancestor.height}"
        )
        self.cursor = ancestor
        self._deferred_reorg = None
        self._enter(SyncState.CATCHING_UP)

    async def _defer_lighter_branch(self, node_tip: Optional[Dict[str, Any]]) -> bool:
        """Give the node one poll to settle when its branch is lighter than ours."""
        indexed = self.store.entry_at(self.cursor.height)
        if node_tip is None or indexed is None:
            return False
        new_td = total_difficulty(node_tip)
        old_td = indexed.total_difficulty
        if new_td is None or old_td is None or new_td >= old_td:
            return False
        if self._deferred_reorg == self.cursor.height:
            log(f"WARN: node still prefers the lighter branch at {self.cursor.height}, following the node")
            return False
        self._deferred_reorg = self.cursor.height
        log(f"WARN: node branch is lighter ({new_td} < {old_td}), re-checking after the next poll")
        await self._wait()
        self._enter(SyncState.CATCHING_UP)
        return True

    async def _retract_pending(self) -> None:
        """Delete documents of a batch that was written but never committed."""
        pending = self.store.pending()
        if not pending:
            return
        log(
            f"WARN: retracting {len(pending)} uncommitted blocks "
            f"({pending[0].height}-{pending[-1].height}) from an interrupted batch"
        )
        await self._retract(pending)
        self.store.discard_pending()

    async def _retract(self, entries: List[JournalEntry]) -> None:
        actions: List[IndexAction] = []
        for entry in entries:
            actions.append(delete_action(BLOCK_INDEX, entry.height))
            actions.extend(delete_action(TX_INDEX, tx_hash) for tx_hash in entry.tx_hashes)
            actions.extend(delete_action(CONTRACT_INDEX, tx_hash) for tx_hash in entry.contract_txs)
        if actions:
            await self._write(actions, f"retract {len(entries)} blocks")

    async def _write(self, actions: List[IndexAction], what: str) -> None:
        try:
            await self._call(what, self.indexer.bulk_write, actions)
        except IndexWriteError as exc:
            raise FatalSyncError(f"{what} permanently rejected: {exc}") from exc

    async def _call(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.call_timeout)
            except (TransientNetworkError, asyncio.TimeoutError) as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    raise FatalSyncError(f"{what} failed after {attempt} attempts: {_describe(exc)}") from exc
                delay = min(self.backoff_base * 2 ** (attempt - 1), self.max_backoff)
                log(f"WARN: {what} failed ({_describe(exc)}), retry {attempt}/{self.max_attempts - 1} in {delay}s")
                await self._sleep(delay)

    async def backfill(self, from_height: int, to_height: Optional[int] = None) -> int:
        """Re-index committed heights without moving the cursor."""
        await self._call("ensure indices", self.index_manager.ensure_indices)
        cursor = self.store.load()
        limit = cursor.height if cursor else -1
        to_height = limit if to_height is None else to_height
        if to_height > limit:
            raise ValueError(f"backfill beyond the cursor ({limit}) would bypass the journal; use run")
        written = 0
        for start in range(from_height, to_height + 1, self.batch_size):
            end = min(start + self.batch_size - 1, to_height)
            blocks = []
            for height in range(start, end + 1):
                block = await self._call(f"block {height}", self.reader.block_at, height)
                if block is None:
                    raise NotFoundError(f"block {height} not found on the node")
                blocks.append(block)
            actions, _ = await self._build_batch(blocks)
            await self._write(actions, f"backfill {start}-{end}")
            written += len(blocks)
            log(f"Backfilled blocks {start}-{end}")
        return written

    async def rewind(self, height: int) -> Cursor:
        """Operator rewind: retract everything above ``height`` and move the cursor there."""
        cursor = self.store.load()
        if cursor is None or height >= cursor.height:
            raise ValueError(f"rewind target {height} must be below the cursor ({cursor.height if cursor else None})")
        if height < 0:
            raise ValueError("rewind target must be >= 0")

        await self._retract_pending()
        stale = await self._stale_entries(height, cursor.height)
        entry = self.store.entry_at(height)
        if entry is not None:
            target = Cursor(height, entry.hash)
        else:
            block = await self._call(f"block {height}", self.reader.block_at, height)
            target = Cursor(height, to_hex(block.get("hash")) if block else None)

        await self._retract(stale)
        self.store.rewind(target)
        self.cursor = target
        log(f"Rewound cursor {cursor.height} -> {height}, retracted {len(stale)} blocks")
        return target

    async def _stale_entries(self, above: int, up_to: int) -> List[JournalEntry]:
        journal = {entry.height: entry for entry in self.store.entries_above(above)}
        entries = []
        for height in range(above + 1, up_to + 1):
            entry = journal.get(height)
            if entry is None:
                # Pruned from the journal; recover the tx list from the indexed block.
                doc = await self._call(f"get block {height}", self.indexer.get_document, BLOCK_INDEX, height)
                txs = list(doc.get("txs") or []) if doc else []
                entry = JournalEntry(height, doc.get("hash", "") if doc else "", "", None, txs, txs, True)
            entries.append(entry)
        return entries
