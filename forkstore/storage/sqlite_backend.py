"""SQLite storage backend for chain-linked log entries and replication cursors.

Every admission writes the entry and advances the origin machine's cursor in
one transaction. Superseded entries are soft-removed so the full chain history
stays available for replication until an explicit reclaim pass purges it.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from .entry import LogEntry, ReplicationCursor, decode_tally, encode_tally
from .errors import (
    BackendUnavailableError,
    DuplicateEntryError,
    EntryNotFoundError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
-- Log entries: one row per mutation, superseded rows keep removed_at
CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL UNIQUE,
    previous_entry_id TEXT NOT NULL DEFAULT '',
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    origin_machine TEXT NOT NULL,
    previous_machine TEXT NOT NULL DEFAULT '',
    log_offset INTEGER NOT NULL DEFAULT 0,
    chain_number INTEGER NOT NULL,
    previous_chain_number INTEGER NOT NULL DEFAULT 0,
    change_tally TEXT NOT NULL DEFAULT '{}',
    is_deleted INTEGER NOT NULL DEFAULT 0,
    is_discarded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    removed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_entries_key ON entries(key);
CREATE INDEX IF NOT EXISTS idx_entries_chain ON entries(origin_machine, chain_number);
CREATE INDEX IF NOT EXISTS idx_entries_removed ON entries(removed_at);

-- Replication cursors: last admitted entry per machine
CREATE TABLE IF NOT EXISTS cursors (
    machine_id TEXT PRIMARY KEY,
    log_offset INTEGER NOT NULL DEFAULT 0,
    chain_number INTEGER NOT NULL DEFAULT 0,
    entry_id TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

-- Replay gaps: lineages whose merge stopped on a predecessor we never saw
CREATE TABLE IF NOT EXISTS replay_gaps (
    key TEXT NOT NULL,
    origin_machine TEXT NOT NULL,
    entry_id TEXT NOT NULL,
    chain_number INTEGER NOT NULL,
    missing_machine TEXT NOT NULL,
    missing_chain_number INTEGER NOT NULL,
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (key, origin_machine)
);
"""

ENTRY_COLUMNS = """
    entry_id, previous_entry_id, key, value, origin_machine, previous_machine,
    log_offset, chain_number, previous_chain_number, change_tally,
    is_deleted, is_discarded, created_at
"""


def _row_to_entry(row: sqlite3.Row) -> LogEntry:
    return LogEntry(
        entry_id=row["entry_id"],
        previous_entry_id=row["previous_entry_id"],
        key=row["key"],
        value=row["value"],
        origin_machine=row["origin_machine"],
        previous_machine=row["previous_machine"],
        log_offset=row["log_offset"],
        chain_number=row["chain_number"],
        previous_chain_number=row["previous_chain_number"],
        change_tally=decode_tally(row["change_tally"]),
        deleted=bool(row["is_deleted"]),
        discarded=bool(row["is_discarded"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_cursor(row: sqlite3.Row) -> ReplicationCursor:
    return ReplicationCursor(
        machine_id=row["machine_id"],
        log_offset=row["log_offset"],
        chain_number=row["chain_number"],
        entry_id=row["entry_id"],
    )


class SQLiteBackend:
    """Transactional entry and cursor storage on top of SQLite.

    The connection runs in autocommit mode; all writes go through
    transaction(), which nests via savepoints.
    """

    def __init__(
        self,
        db_path: str | Path,
        busy_timeout: float = 5.0,
        log: logging.Logger | None = None,
    ):
        """Initialize the backend.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout: Seconds to wait on a locked database.
            log: Logger to report through. Defaults to the module logger.
        """
        self.db_path = Path(db_path).expanduser()
        self.busy_timeout = busy_timeout
        self.log = log or logger
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def from_config(cls, config: Any, log: logging.Logger | None = None) -> "SQLiteBackend":
        """Build a backend from a StorageConfig."""
        return cls(
            config.db_path,
            busy_timeout=config.busy_timeout_seconds,
            log=log,
        )

    def connect(self) -> None:
        """Open the database connection and create the schema."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        except sqlite3.OperationalError as e:
            raise BackendUnavailableError(
                f"cannot open {self.db_path}: {e}"
            ) from e

        self.log.info(f"SQLiteBackend connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._depth = 0

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._ensure_connected()
        try:
            return conn.execute(sql, params)
        except sqlite3.OperationalError as e:
            raise BackendUnavailableError(f"backend error: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self) -> Iterator["SQLiteBackend"]:
        """Run a block atomically.

        The outermost block holds an IMMEDIATE transaction; nested blocks are
        savepoints, so an inner failure rolls back only the inner block while
        an outer failure discards everything. The yielded handle is this
        backend and is only meaningful inside the block.
        """
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            self._execute("BEGIN IMMEDIATE" if depth == 0 else f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._execute("ROLLBACK")
                else:
                    self._execute(f"ROLLBACK TO {savepoint}")
                    self._execute(f"RELEASE {savepoint}")
                raise
            else:
                self._depth -= 1
                if depth == 0:
                    try:
                        self._execute("COMMIT")
                    except BackendUnavailableError:
                        self._execute("ROLLBACK")
                        raise
                else:
                    self._execute(f"RELEASE {savepoint}")

    def with_transaction(self, func: Callable[["SQLiteBackend"], T]) -> T:
        """Call func(backend) inside a transaction and return its result."""
        with self.transaction() as tx:
            return func(tx)

    # ==================== Admission ====================

    def _exists(self, entry_id: str, include_superseded: bool = False) -> bool:
        sql = "SELECT 1 FROM entries WHERE entry_id = ?"
        if not include_superseded:
            sql += " AND removed_at IS NULL"
        return bool(self._query(sql, (entry_id,)))

    def _insert(self, entry: LogEntry) -> None:
        try:
            self._execute(
                f"""
                INSERT INTO entries ({ENTRY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.previous_entry_id,
                    entry.key,
                    entry.value,
                    entry.origin_machine,
                    entry.previous_machine,
                    entry.log_offset,
                    entry.chain_number,
                    entry.previous_chain_number,
                    encode_tally(entry.change_tally),
                    int(entry.deleted),
                    int(entry.discarded),
                    entry.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateEntryError(
                f"entry {entry.entry_id} exists",
                entry_id=entry.entry_id,
                key=entry.key,
                machine_id=entry.origin_machine,
            ) from e

    def _upsert_cursor(self, entry: LogEntry) -> None:
        # Never moves a cursor backwards
        self._execute(
            """
            INSERT INTO cursors (machine_id, log_offset, chain_number, entry_id, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(machine_id) DO UPDATE SET
                log_offset = excluded.log_offset,
                chain_number = excluded.chain_number,
                entry_id = excluded.entry_id,
                updated_at = excluded.updated_at
            WHERE excluded.chain_number >= cursors.chain_number
            """,
            (
                entry.origin_machine,
                entry.log_offset,
                entry.chain_number,
                entry.entry_id,
                datetime.now().isoformat(),
            ),
        )

    def _check_new(self, entry: LogEntry) -> None:
        if self._exists(entry.entry_id, include_superseded=True):
            raise DuplicateEntryError(
                f"entry {entry.entry_id} exists",
                entry_id=entry.entry_id,
                key=entry.key,
                machine_id=entry.origin_machine,
            )

    def add(self, entry: LogEntry) -> None:
        """Admit the first entry of a lineage.

        Raises:
            DuplicateEntryError: entry_id is already in the log.
        """
        with self.transaction():
            self._check_new(entry)
            self._insert(entry)
            self._upsert_cursor(entry)

        self.log.debug(
            f"Added {entry.entry_id} key={entry.key!r} "
            f"machine={entry.origin_machine} chain={entry.chain_number}"
        )

    def replace(self, old_entry_id: str, entry: LogEntry) -> None:
        """Supersede a lineage head with its successor.

        Raises:
            EntryNotFoundError: old_entry_id is not a live entry.
            DuplicateEntryError: entry.entry_id is already in the log.
        """
        with self.transaction():
            if not self._exists(old_entry_id):
                raise EntryNotFoundError(
                    f"entry {old_entry_id} not found",
                    entry_id=old_entry_id,
                    key=entry.key,
                    machine_id=entry.origin_machine,
                )
            self._check_new(entry)
            self._execute(
                "UPDATE entries SET removed_at = ? WHERE entry_id = ? AND removed_at IS NULL",
                (datetime.now().isoformat(), old_entry_id),
            )
            self._insert(entry)
            self._upsert_cursor(entry)

        self.log.debug(
            f"Replaced {old_entry_id} with {entry.entry_id} key={entry.key!r} "
            f"machine={entry.origin_machine} chain={entry.chain_number}"
        )

    # ==================== Queries ====================

    def has(self, entry_id: str, include_superseded: bool = False) -> bool:
        """Check whether entry_id is live (or known at all)."""
        return self._exists(entry_id, include_superseded=include_superseded)

    def get_by_entry_id(self, entry_id: str) -> LogEntry:
        """Look up a live entry.

        Raises:
            EntryNotFoundError: No live entry has this id.
        """
        rows = self._query(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE entry_id = ? AND removed_at IS NULL",
            (entry_id,),
        )
        if not rows:
            raise EntryNotFoundError(f"entry {entry_id} not found", entry_id=entry_id)
        return _row_to_entry(rows[0])

    def get_by_key(self, key: str) -> list[LogEntry]:
        """All live entries for a key, flagged ones included, in admission order."""
        rows = self._query(
            f"""
            SELECT {ENTRY_COLUMNS} FROM entries
            WHERE key = ? AND removed_at IS NULL
            ORDER BY id ASC
            """,
            (key,),
        )
        return [_row_to_entry(row) for row in rows]

    def head_for(self, key: str, origin_machine: str) -> LogEntry | None:
        """Live head of the (key, origin_machine) lineage, if any."""
        rows = self._query(
            f"""
            SELECT {ENTRY_COLUMNS} FROM entries
            WHERE key = ? AND origin_machine = ? AND removed_at IS NULL
            ORDER BY chain_number DESC
            LIMIT 1
            """,
            (key, origin_machine),
        )
        return _row_to_entry(rows[0]) if rows else None

    def all_entries(self, include_superseded: bool = False) -> list[LogEntry]:
        """Full scan ordered by origin machine and chain number."""
        sql = f"SELECT {ENTRY_COLUMNS} FROM entries"
        if not include_superseded:
            sql += " WHERE removed_at IS NULL"
        sql += " ORDER BY origin_machine ASC, chain_number ASC, id ASC"
        return [_row_to_entry(row) for row in self._query(sql)]

    def entries_since(self, cursors: dict[str, int]) -> list[LogEntry]:
        """Entries a peer is missing, given its per-machine chain numbers.

        Superseded history is included so the peer can replay whole chains.
        Machines absent from cursors are sent in full.
        """
        return [
            e
            for e in self.all_entries(include_superseded=True)
            if e.chain_number > cursors.get(e.origin_machine, 0)
        ]

    def keys(self) -> list[str]:
        rows = self._query(
            "SELECT DISTINCT key FROM entries WHERE removed_at IS NULL ORDER BY key"
        )
        return [row["key"] for row in rows]

    def get_cursor(self, machine_id: str) -> ReplicationCursor | None:
        rows = self._query(
            "SELECT * FROM cursors WHERE machine_id = ?", (machine_id,)
        )
        return _row_to_cursor(rows[0]) if rows else None

    def all_cursors(self) -> list[ReplicationCursor]:
        rows = self._query("SELECT * FROM cursors ORDER BY machine_id")
        return [_row_to_cursor(row) for row in rows]

    # ==================== Replay gaps ====================

    def record_gap(self, entry: LogEntry) -> None:
        """Remember that entry's lineage is waiting on its predecessor.

        One gap is kept per lineage; a later failure overwrites it, since it
        points at the furthest-back entry still missing.
        """
        self._execute(
            """
            INSERT INTO replay_gaps (
                key, origin_machine, entry_id, chain_number,
                missing_machine, missing_chain_number, recorded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(key, origin_machine) DO UPDATE SET
                entry_id = excluded.entry_id,
                chain_number = excluded.chain_number,
                missing_machine = excluded.missing_machine,
                missing_chain_number = excluded.missing_chain_number,
                recorded_at = excluded.recorded_at
            """,
            (
                entry.key,
                entry.origin_machine,
                entry.entry_id,
                entry.chain_number,
                entry.previous_machine or entry.origin_machine,
                entry.previous_chain_number,
                datetime.now().isoformat(),
            ),
        )
        self.log.debug(
            f"Gap in ({entry.key!r}, {entry.origin_machine}): waiting on "
            f"{entry.previous_machine} chain {entry.previous_chain_number}"
        )

    def close_gap(self, entry: LogEntry) -> None:
        """Drop the lineage's gap once entry has reached past it."""
        self._execute(
            """
            DELETE FROM replay_gaps
            WHERE key = ? AND origin_machine = ? AND chain_number <= ?
            """,
            (entry.key, entry.origin_machine, entry.chain_number),
        )

    def gaps(self) -> list[dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM replay_gaps ORDER BY origin_machine, key"
        )
        return [dict(row) for row in rows]

    def replay_cursors(self) -> dict[str, int]:
        """Per-machine chain numbers to request from peers.

        These are the replication cursors, lowered so that every open gap's
        missing predecessor is requested again.
        """
        cursors = {c.machine_id: c.chain_number for c in self.all_cursors()}
        rows = self._query(
            """
            SELECT missing_machine, MIN(missing_chain_number) AS chain
            FROM replay_gaps
            GROUP BY missing_machine
            """
        )
        for row in rows:
            floor = max(row["chain"] - 1, 0)
            machine = row["missing_machine"]
            cursors[machine] = min(cursors.get(machine, floor), floor)
        return cursors

    # ==================== Maintenance ====================

    def reclaim(self, older_than: timedelta | None = None) -> int:
        """Physically purge superseded, deleted and discarded entries.

        Args:
            older_than: Only purge rows removed (or, for flagged live rows,
                created) at least this long ago.

        Returns:
            Number of rows purged.
        """
        cutoff = (datetime.now() - older_than).isoformat() if older_than else None

        with self.transaction():
            cursor = self._execute(
                """
                DELETE FROM entries
                WHERE (removed_at IS NOT NULL AND (? IS NULL OR removed_at < ?))
                   OR (removed_at IS NULL
                       AND (is_deleted = 1 OR is_discarded = 1)
                       AND (? IS NULL OR created_at < ?))
                """,
                (cutoff, cutoff, cutoff, cutoff),
            )
            purged = cursor.rowcount

        if purged > 0:
            self.log.info(f"Reclaimed {purged} entries")
        return purged

    def get_stats(self) -> dict[str, Any]:
        """Entry, key and cursor counts for diagnostics."""
        row = self._query(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN removed_at IS NULL THEN 1 ELSE 0 END) AS live,
                SUM(CASE WHEN removed_at IS NOT NULL THEN 1 ELSE 0 END) AS superseded,
                SUM(CASE WHEN removed_at IS NULL AND is_deleted = 1 THEN 1 ELSE 0 END) AS deleted,
                SUM(CASE WHEN removed_at IS NULL AND is_discarded = 1 THEN 1 ELSE 0 END) AS discarded,
                COUNT(DISTINCT key) AS keys
            FROM entries
            """
        )[0]

        stats = {
            "total_entries": row["total"],
            "live_entries": row["live"] or 0,
            "superseded_entries": row["superseded"] or 0,
            "deleted_entries": row["deleted"] or 0,
            "discarded_entries": row["discarded"] or 0,
            "keys": row["keys"],
            "cursors": len(self.all_cursors()),
            "replay_gaps": len(self.gaps()),
        }

        if self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
