"""Error taxonomy shared by the reader, the index adapters and the sync engine."""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by block_indexer."""


class TransientNetworkError(SyncError):
    """Node or index temporarily unreachable; safe to retry."""


class NotFoundError(SyncError):
    """Requested block, transaction or receipt does not exist yet."""


class SchemaMismatchError(SyncError):
    def __init__(self, index: str, problems: list):
        self.index = index
        self.problems = list(problems)
        super().__init__(f"index {index} has an incompatible mapping: {'; '.join(self.problems)}")


class ReorgDetectedError(SyncError):
    """Parent hash of the next block does not match the indexed chain."""

    def __init__(self, height: int, expected: Optional[str] = None, found: Optional[str] = None):
        self.height = height
        self.expected = expected
        self.found = found
        super().__init__(f"reorg detected at height {height} (expected parent {expected}, got {found})")


class PrecisionLossError(SyncError, ValueError):
    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        super().__init__(f"{field}={value!r} cannot be encoded without loss: {reason}")


class IndexWriteError(SyncError):
    """Index rejected documents for a reason that retrying will not fix."""

    def __init__(self, message: str, failures: Optional[list] = None):
        self.failures = failures or []
        super().__init__(message)


class FatalSyncError(SyncError):
    """Unrecoverable; the last committed cursor stays the resume point."""
