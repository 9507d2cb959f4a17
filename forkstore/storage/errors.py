"""Exception types raised by the storage engine."""

from typing import Any


class StorageError(Exception):
    """Base class for storage errors.

    Carries whatever context is known about the failing operation so callers
    can retry or report without re-parsing the message.
    """

    def __init__(
        self,
        message: str,
        *,
        entry_id: str | None = None,
        key: str | None = None,
        machine_id: str | None = None,
    ):
        super().__init__(message)
        self.entry_id = entry_id
        self.key = key
        self.machine_id = machine_id

    def context(self) -> dict[str, Any]:
        """Return the non-empty context fields as a dict."""
        ctx = {
            "entry_id": self.entry_id,
            "key": self.key,
            "machine_id": self.machine_id,
        }
        return {k: v for k, v in ctx.items() if v is not None}


class DuplicateEntryError(StorageError):
    """An entry with the same entry_id is already in the log."""


class EntryNotFoundError(StorageError):
    """A referenced entry is not live in the log.

    For chain extension this usually means a concurrent writer already moved
    the lineage head; re-read the head and retry.
    """


class KeyNotFoundError(EntryNotFoundError):
    """The local machine holds no visible version of a key."""


class NoMainVersionError(StorageError):
    """No entry for a key originates from the reading machine."""


class MissingChainPredecessorError(StorageError):
    """A merge candidate references a predecessor that was never merged."""


class InvalidChainLinkError(StorageError):
    """A candidate's predecessor fields disagree with the lineage head."""


class LineageConflictError(StorageError):
    """A second root arrived for a lineage that still has a visible head."""


class BackendUnavailableError(StorageError):
    """Transient backend failure (locked database, I/O error, timeout)."""


class MergeError(StorageError):
    """A strict merge had lineage failures and was rolled back."""

    def __init__(self, message: str, report: Any):
        super().__init__(message)
        self.report = report
