import json
import sqlite3
from typing import Any, Dict, List, NamedTuple, Optional


class Cursor(NamedTuple):
    height: int
    hash: Optional[str]


class JournalEntry(NamedTuple):
    height: int
    hash: str
    parent_hash: str
    total_difficulty: Optional[int]
    tx_hashes: List[str]
    contract_txs: List[str]
    committed: bool = False


class CursorStore:
    """Durable sync position plus the journal of recently indexed blocks.

    The cursor row only ever moves forward through ``commit``; moving it back
    goes through ``rewind``, which records a reorg event.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def open(self) -> None:
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_indexed_height INTEGER NOT NULL,
                last_indexed_hash TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS indexed_blocks (
                height INTEGER PRIMARY KEY,
                hash TEXT NOT NULL,
                parent_hash TEXT,
                total_difficulty TEXT,
                tx_hashes TEXT NOT NULL,
                contract_txs TEXT NOT NULL,
                committed INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS reorg_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                detected_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                old_height INTEGER NOT NULL,
                old_hash TEXT,
                ancestor_height INTEGER NOT NULL,
                ancestor_hash TEXT
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _db(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("cursor store not opened")
        return self.conn

    def load(self) -> Optional[Cursor]:
        row = self._db().execute(
            "SELECT last_indexed_height, last_indexed_hash FROM sync_state WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        return Cursor(int(row["last_indexed_height"]), row["last_indexed_hash"])

    def initialize(self, cursor: Cursor) -> None:
        conn = self._db()
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO sync_state (id, last_indexed_height, last_indexed_hash) VALUES (1, ?, ?)",
                (cursor.height, cursor.hash),
            )
            if cursor.hash:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO indexed_blocks
                        (height, hash, parent_hash, total_difficulty, tx_hashes, contract_txs, committed)
                    VALUES (?, ?, NULL, NULL, '[]', '[]', 1)
                    """,
                    (cursor.height, cursor.hash),
                )

    def stage(self, entries: List[JournalEntry]) -> None:
        """Journal blocks about to be written, before the bulk write is sent."""
        rows = [
            (
                e.height,
                e.hash,
                e.parent_hash,
                str(e.total_difficulty) if e.total_difficulty is not None else None,
                json.dumps(e.tx_hashes),
                json.dumps(e.contract_txs),
            )
            for e in entries
        ]
        conn = self._db()
        with conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO indexed_blocks
                    (height, hash, parent_hash, total_difficulty, tx_hashes, contract_txs, committed)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                rows,
            )

    def commit(self, cursor: Cursor) -> None:
        current = self.load()
        if current is not None and cursor.height <= current.height:
            raise ValueError(
                f"cursor must advance: {cursor.height} <= {current.height} (use rewind to move back)"
            )
        conn = self._db()
        with conn:
            conn.execute("UPDATE indexed_blocks SET committed = 1 WHERE height <= ?", (cursor.height,))
            conn.execute(
                """
                INSERT INTO sync_state (id, last_indexed_height, last_indexed_hash) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_indexed_height = excluded.last_indexed_height,
                    last_indexed_hash = excluded.last_indexed_hash,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (cursor.height, cursor.hash),
            )

    def rewind(self, ancestor: Cursor) -> None:
        current = self.load()
        conn = self._db()
        with conn:
            conn.execute(
                """
                INSERT INTO reorg_events (old_height, old_hash, ancestor_height, ancestor_hash)
                VALUES (?, ?, ?, ?)
                """,
                (
                    current.height if current else ancestor.height,
                    current.hash if current else None,
                    ancestor.height,
                    ancestor.hash,
                ),
            )
            conn.execute("DELETE FROM indexed_blocks WHERE height > ?", (ancestor.height,))
            conn.execute(
                """
                UPDATE sync_state
                SET last_indexed_height = ?, last_indexed_hash = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = 1
                """,
                (ancestor.height, ancestor.hash),
            )

    def entry_at(self, height: int) -> Optional[JournalEntry]:
        row = self._db().execute("SELECT * FROM indexed_blocks WHERE height = ?", (height,)).fetchone()
        return self._entry(row) if row is not None else None

    def entries_above(self, height: int) -> List[JournalEntry]:
        rows = self._db().execute(
            "SELECT * FROM indexed_blocks WHERE height > ? ORDER BY height ASC", (height,)
        ).fetchall()
        return [self._entry(row) for row in rows]

    def pending(self) -> List[JournalEntry]:
        rows = self._db().execute(
            "SELECT * FROM indexed_blocks WHERE committed = 0 ORDER BY height ASC"
        ).fetchall()
        return [self._entry(row) for row in rows]

    def discard_pending(self) -> None:
        conn = self._db()
        with conn:
            conn.execute("DELETE FROM indexed_blocks WHERE committed = 0")

    def oldest_height(self) -> Optional[int]:
        row = self._db().execute("SELECT MIN(height) AS h FROM indexed_blocks").fetchone()
        return row["h"] if row is not None else None

    def prune(self, below_height: int) -> None:
        conn = self._db()
        with conn:
            conn.execute("DELETE FROM indexed_blocks WHERE height < ? AND committed = 1", (below_height,))

    def reorg_events(self) -> List[Dict[str, Any]]:
        rows = self._db().execute(
            """
            SELECT detected_at, old_height, old_hash, ancestor_height, ancestor_hash
            FROM reorg_events ORDER BY id ASC
            """
        ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def _entry(row: sqlite3.Row) -> JournalEntry:
        td = row["total_difficulty"]
        return JournalEntry(
            height=int(row["height"]),
            hash=row["hash"],
            parent_hash=row["parent_hash"] or "",
            total_difficulty=int(td) if td is not None else None,
            tx_hashes=json.loads(row["tx_hashes"]),
            contract_txs=json.loads(row["contract_txs"]),
            committed=bool(row["committed"]),
        )
