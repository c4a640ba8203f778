"""Index blocks, transactions and contract creations from an Ethereum node into Elasticsearch."""

from .cursor import Cursor, CursorStore
from .engine import SyncEngine, SyncState
from .errors import (
    FatalSyncError,
    IndexWriteError,
    NotFoundError,
    PrecisionLossError,
    ReorgDetectedError,
    SchemaMismatchError,
    SyncError,
    TransientNetworkError,
)

__version__ = "0.1.0"

__all__ = [
    "Cursor",
    "CursorStore",
    "SyncEngine",
    "SyncState",
    "FatalSyncError",
    "IndexWriteError",
    "NotFoundError",
    "PrecisionLossError",
    "ReorgDetectedError",
    "SchemaMismatchError",
    "SyncError",
    "TransientNetworkError",
]
