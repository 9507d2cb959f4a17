"""Merge a foreign log into a local backend.

Remote entries are replayed lineage by lineage. Each admission is its own
nested transaction, so one lineage failing leaves the others in place; all
failures are collected in the returned MergeReport.

A lineage stopped by a missing predecessor leaves a replay gap in the local
backend, so later pulls ask peers for that predecessor again.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .entry import LogEntry
from .errors import (
    BackendUnavailableError,
    EntryNotFoundError,
    InvalidChainLinkError,
    LineageConflictError,
    MergeError,
    MissingChainPredecessorError,
    StorageError,
)
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineageFailure:
    """A lineage whose merge stopped at entry_id."""

    key: str
    origin_machine: str
    entry_id: str
    error: StorageError

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "origin_machine": self.origin_machine,
            "entry_id": self.entry_id,
            "error": type(self.error).__name__,
            "message": str(self.error),
        }


@dataclass
class MergeReport:
    """Outcome of a merge."""

    admitted: list[str] = field(default_factory=list)
    already_present: int = 0
    skipped: list[str] = field(default_factory=list)
    failures: list[LineageFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def failed_lineages(self) -> set[tuple[str, str]]:
        return {(f.key, f.origin_machine) for f in self.failures}

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": list(self.admitted),
            "already_present": self.already_present,
            "skipped": list(self.skipped),
            "failures": [f.to_dict() for f in self.failures],
        }


def _remote_entries(remote: Any) -> list[LogEntry]:
    if hasattr(remote, "all_entries"):
        return remote.all_entries(include_superseded=True)
    return list(remote)


def _admit(local: SQLiteBackend, entry: LogEntry) -> None:
    """Admit one candidate whose predecessor is known locally (or absent)."""
    head = local.head_for(entry.key, entry.origin_machine)

    if entry.is_root:
        if head is None:
            local.add(entry)
        elif not head.visible:
            # The origin machine reclaimed its tombstone and wrote again
            local.replace(head.entry_id, entry)
        else:
            raise LineageConflictError(
                f"lineage ({entry.key!r}, {entry.origin_machine}) already has "
                f"head {head.entry_id}",
                entry_id=entry.entry_id,
                key=entry.key,
                machine_id=entry.origin_machine,
            )
        return

    if not local.has(entry.previous_entry_id):
        # Known only as superseded history: the lineage has moved on
        raise EntryNotFoundError(
            f"predecessor {entry.previous_entry_id} is no longer a head",
            entry_id=entry.entry_id,
            key=entry.key,
            machine_id=entry.origin_machine,
        )

    previous = local.get_by_entry_id(entry.previous_entry_id)
    if head is not None and head.entry_id != previous.entry_id:
        raise LineageConflictError(
            f"lineage ({entry.key!r}, {entry.origin_machine}) already has "
            f"head {head.entry_id}",
            entry_id=entry.entry_id,
            key=entry.key,
            machine_id=entry.origin_machine,
        )
    if not entry.links_to(previous):
        raise InvalidChainLinkError(
            f"entry {entry.entry_id} does not link to {previous.entry_id}",
            entry_id=entry.entry_id,
            key=entry.key,
            machine_id=entry.origin_machine,
        )
    local.replace(previous.entry_id, entry)


def merge(local: SQLiteBackend, remote: Any, strict: bool = False) -> MergeReport:
    """Merge remote entries into local.

    Local precedence only affects which version a reader calls main; remote
    writes are never dropped. Merging the same remote twice is a no-op.

    Args:
        local: Backend to merge into.
        remote: A backend (its full history is read) or an iterable of
            LogEntry objects.
        strict: Roll back the whole merge if any lineage fails.

    Returns:
        MergeReport listing admitted entries and per-lineage failures.

    Raises:
        MergeError: strict is set and at least one lineage failed.
    """
    report = MergeReport()

    candidates = []
    seen = set()
    for entry in _remote_entries(remote):
        if entry.entry_id in seen or local.has(entry.entry_id, include_superseded=True):
            report.already_present += 1
            continue
        seen.add(entry.entry_id)
        candidates.append(entry)

    candidates.sort(key=lambda e: (e.origin_machine, e.chain_number))

    failed: dict[tuple[str, str], LineageFailure] = {}

    def fail(entry: LogEntry, error: StorageError) -> None:
        failure = LineageFailure(entry.key, entry.origin_machine, entry.entry_id, error)
        failed[entry.lineage] = failure
        report.failures.append(failure)
        if isinstance(error, MissingChainPredecessorError):
            local.record_gap(entry)
        logger.warning(
            f"Merge of ({entry.key!r}, {entry.origin_machine}) stopped at "
            f"{entry.entry_id}: {error}"
        )

    with local.transaction():
        pending = candidates
        progress = True
        while pending and progress:
            progress = False
            deferred = []
            pending_ids = {e.entry_id for e in pending}

            for entry in pending:
                if entry.lineage in failed:
                    report.skipped.append(entry.entry_id)
                    continue

                if not entry.is_root and not local.has(
                    entry.previous_entry_id, include_superseded=True
                ):
                    if entry.previous_entry_id in pending_ids:
                        deferred.append(entry)
                    else:
                        fail(
                            entry,
                            MissingChainPredecessorError(
                                f"predecessor {entry.previous_entry_id} was never merged",
                                entry_id=entry.entry_id,
                                key=entry.key,
                                machine_id=entry.origin_machine,
                            ),
                        )
                    continue

                try:
                    with local.transaction():
                        _admit(local, entry)
                        local.close_gap(entry)
                except BackendUnavailableError:
                    raise
                except StorageError as e:
                    fail(entry, e)
                    continue

                report.admitted.append(entry.entry_id)
                pending_ids.discard(entry.entry_id)
                progress = True

            pending = deferred

        for entry in pending:
            if entry.lineage in failed:
                report.skipped.append(entry.entry_id)
            else:
                fail(
                    entry,
                    MissingChainPredecessorError(
                        f"predecessor {entry.previous_entry_id} could not be merged",
                        entry_id=entry.entry_id,
                        key=entry.key,
                        machine_id=entry.origin_machine,
                    ),
                )

        if strict and report.failures:
            raise MergeError(
                f"merge rolled back: {len(report.failures)} lineage(s) failed",
                report,
            )

    logger.info(
        f"Merged {len(report.admitted)} entries "
        f"({report.already_present} already present, "
        f"{len(report.failures)} lineage failures)"
    )
    return report
