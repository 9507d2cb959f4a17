"""Storage engine for forkstore.

Provides:
- Chain-linked log entries and per-machine replication cursors
- A transactional SQLite backend for admitting and querying entries
- A multi-version reader (main version plus conflict branches)
- A merge engine that replays a foreign log lineage by lineage
"""

from .entry import LogEntry, ReplicationCursor, new_entry_id
from .errors import (
    BackendUnavailableError,
    DuplicateEntryError,
    EntryNotFoundError,
    InvalidChainLinkError,
    KeyNotFoundError,
    LineageConflictError,
    MergeError,
    MissingChainPredecessorError,
    NoMainVersionError,
    StorageError,
)
from .merge import LineageFailure, MergeReport, merge
from .sqlite_backend import SQLiteBackend
from .store import Store
from .value import CONFLICT_MARKER, LogicalValue

__all__ = [
    "BackendUnavailableError",
    "CONFLICT_MARKER",
    "DuplicateEntryError",
    "EntryNotFoundError",
    "InvalidChainLinkError",
    "KeyNotFoundError",
    "LineageConflictError",
    "LineageFailure",
    "LogEntry",
    "LogicalValue",
    "MergeError",
    "MergeReport",
    "MissingChainPredecessorError",
    "NoMainVersionError",
    "ReplicationCursor",
    "SQLiteBackend",
    "StorageError",
    "Store",
    "merge",
    "new_entry_id",
]
