"""Key-value store facade for one machine.

Writes append chain-linked entries to the machine's own lineage for a key;
reads fold every lineage head of the key into a LogicalValue.
"""

import logging
from datetime import timedelta
from typing import Any

from .entry import LogEntry, ReplicationCursor, new_entry_id
from .errors import EntryNotFoundError, KeyNotFoundError, NoMainVersionError
from .merge import MergeReport, merge
from .sqlite_backend import SQLiteBackend
from .value import LogicalValue

logger = logging.getLogger(__name__)


class Store:
    """Branch-preserving key-value register backed by a SQLiteBackend."""

    def __init__(
        self,
        backend: SQLiteBackend,
        machine_id: str,
        max_save_retries: int = 3,
    ):
        """Initialize the store.

        Args:
            backend: Storage backend holding the log.
            machine_id: Identifier of the local machine.
            max_save_retries: Times to retry a write whose lineage head was
                moved by a concurrent writer.
        """
        self.backend = backend
        self.machine_id = machine_id
        self.max_save_retries = max_save_retries

    @classmethod
    def from_config(cls, config: Any) -> "Store":
        """Build a store from a Config."""
        backend = SQLiteBackend.from_config(config.storage)
        return cls(
            backend,
            machine_id=config.node.machine_id,
            max_save_retries=config.storage.max_save_retries,
        )

    def connect(self) -> None:
        self.backend.connect()

    def close(self) -> None:
        self.backend.close()

    # ==================== Writes ====================

    def _append(
        self, tx: SQLiteBackend, key: str, value: str, deleted: bool
    ) -> LogEntry:
        cursor = tx.get_cursor(self.machine_id)
        head = tx.head_for(key, self.machine_id)

        if deleted and (head is None or not head.visible):
            raise KeyNotFoundError(
                f"no version of {key!r} to delete",
                key=key,
                machine_id=self.machine_id,
            )

        chain_number = (cursor.chain_number if cursor else 0) + 1
        log_offset = (cursor.log_offset if cursor else 0) + 1

        if head is None:
            entry = LogEntry(
                entry_id=new_entry_id(),
                key=key,
                value=value,
                origin_machine=self.machine_id,
                chain_number=chain_number,
                log_offset=log_offset,
                change_tally={self.machine_id: 1},
                deleted=deleted,
            )
            tx.add(entry)
        else:
            entry = head.successor(
                entry_id=new_entry_id(),
                value=value,
                origin_machine=self.machine_id,
                chain_number=chain_number,
                log_offset=log_offset,
                deleted=deleted,
            )
            tx.replace(head.entry_id, entry)

        return entry

    def _write(self, key: str, value: str, deleted: bool) -> LogEntry:
        attempt = 0
        while True:
            try:
                return self.backend.with_transaction(
                    lambda tx: self._append(tx, key, value, deleted)
                )
            except KeyNotFoundError:
                raise
            except EntryNotFoundError as e:
                attempt += 1
                if attempt > self.max_save_retries:
                    raise
                logger.warning(
                    f"Head of {key!r} moved during write, "
                    f"retry {attempt}/{self.max_save_retries}: {e}"
                )

    def save(self, key: str, value: str) -> LogEntry:
        """Write a new version of key from this machine.

        Returns:
            The admitted LogEntry.
        """
        return self._write(key, value, deleted=False)

    def delete(self, key: str) -> LogEntry:
        """Append a tombstone to this machine's lineage for key.

        Raises:
            KeyNotFoundError: This machine holds no visible version of key.
        """
        return self._write(key, "", deleted=True)

    # ==================== Reads ====================

    def has(self, key: str) -> bool:
        """Whether this machine holds a visible version of key."""
        head = self.backend.head_for(key, self.machine_id)
        return head is not None and head.visible

    def load(self, key: str) -> LogicalValue:
        """Read key as main version plus conflict branches.

        Raises:
            NoMainVersionError: This machine has no visible version of key.
        """
        heads = [e for e in self.backend.get_by_key(key) if e.visible]
        if not heads:
            raise NoMainVersionError(
                f"no version of {key!r}", key=key, machine_id=self.machine_id
            )
        return LogicalValue.from_entries(heads, self.machine_id)

    def keys(self) -> list[str]:
        return self.backend.keys()

    def all(self) -> list[LogicalValue]:
        """Logical values of every key this machine has a main version for."""
        values = []
        for key in self.backend.keys():
            try:
                values.append(self.load(key))
            except NoMainVersionError:
                logger.debug(f"Key {key!r} has no main version on {self.machine_id}")
        return values

    def cursors(self) -> list[ReplicationCursor]:
        return self.backend.all_cursors()

    # ==================== Replication ====================

    def merge(self, other: Any, strict: bool = False) -> MergeReport:
        """Merge another store, backend, or entry list into this one."""
        remote = other.backend if isinstance(other, Store) else other
        return merge(self.backend, remote, strict=strict)

    def reclaim(self, older_than: timedelta | None = None) -> int:
        """Purge superseded, deleted and discarded entries."""
        return self.backend.reclaim(older_than=older_than)
