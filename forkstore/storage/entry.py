"""Log entry and replication cursor records.

A log entry is one immutable mutation of one key. Entries written by the same
machine for the same key form a lineage, linked through previous_entry_id.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


def new_entry_id() -> str:
    """Generate a globally unique entry identifier."""
    return str(uuid.uuid4())


def encode_tally(tally: dict[str, int]) -> str:
    """Serialize a change tally, keeping insertion order."""
    return json.dumps(tally)


def decode_tally(raw: str | None) -> dict[str, int]:
    """Deserialize a change tally written by encode_tally."""
    if not raw:
        return {}
    return {str(k): int(v) for k, v in json.loads(raw).items()}


@dataclass(frozen=True)
class LogEntry:
    """A single chain-linked mutation in a machine's log."""

    entry_id: str
    key: str
    value: str
    origin_machine: str
    chain_number: int
    log_offset: int = 0
    previous_entry_id: str = ""
    previous_machine: str = ""
    previous_chain_number: int = 0
    change_tally: dict[str, int] = field(default_factory=dict)
    deleted: bool = False
    discarded: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def visible(self) -> bool:
        """Whether readers should see this entry."""
        return not self.deleted and not self.discarded

    @property
    def is_root(self) -> bool:
        """Whether this entry starts its lineage."""
        return not self.previous_entry_id

    @property
    def lineage(self) -> tuple[str, str]:
        return (self.key, self.origin_machine)

    def changes(self, machine_id: str) -> int:
        """Number of times machine_id has mutated this lineage."""
        return self.change_tally.get(machine_id, 0)

    def add_change(self, machine_id: str, changes: int = 1) -> dict[str, int]:
        """Return a copy of the tally with machine_id incremented."""
        tally = dict(self.change_tally)
        tally[machine_id] = tally.get(machine_id, 0) + changes
        return tally

    def successor(
        self,
        *,
        entry_id: str,
        value: str,
        origin_machine: str,
        chain_number: int,
        log_offset: int,
        deleted: bool = False,
    ) -> "LogEntry":
        """Build the entry that extends this one's lineage."""
        return LogEntry(
            entry_id=entry_id,
            key=self.key,
            value=value,
            origin_machine=origin_machine,
            chain_number=chain_number,
            log_offset=log_offset,
            previous_entry_id=self.entry_id,
            previous_machine=self.origin_machine,
            previous_chain_number=self.chain_number,
            change_tally=self.add_change(origin_machine),
            deleted=deleted,
        )

    def links_to(self, head: "LogEntry") -> bool:
        """Check that this entry's predecessor fields describe head."""
        return (
            self.previous_entry_id == head.entry_id
            and self.previous_chain_number == head.chain_number
            and self.previous_machine == head.origin_machine
            and self.key == head.key
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entry_id": self.entry_id,
            "previous_entry_id": self.previous_entry_id,
            "key": self.key,
            "value": self.value,
            "origin_machine": self.origin_machine,
            "previous_machine": self.previous_machine,
            "log_offset": self.log_offset,
            "chain_number": self.chain_number,
            "previous_chain_number": self.previous_chain_number,
            "change_tally": dict(self.change_tally),
            "deleted": self.deleted,
            "discarded": self.discarded,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        """Create from dictionary."""
        return cls(
            entry_id=data["entry_id"],
            previous_entry_id=data.get("previous_entry_id") or "",
            key=data["key"],
            value=data["value"],
            origin_machine=data["origin_machine"],
            previous_machine=data.get("previous_machine") or "",
            log_offset=int(data.get("log_offset", 0)),
            chain_number=int(data["chain_number"]),
            previous_chain_number=int(data.get("previous_chain_number", 0)),
            change_tally={
                str(k): int(v) for k, v in (data.get("change_tally") or {}).items()
            },
            deleted=bool(data.get("deleted", False)),
            discarded=bool(data.get("discarded", False)),
            created_at=(
                datetime.fromisoformat(data["created_at"])
                if data.get("created_at")
                else datetime.now()
            ),
        )


@dataclass(frozen=True)
class ReplicationCursor:
    """Replay bookmark for one machine: the last entry admitted from it."""

    machine_id: str
    log_offset: int = 0
    chain_number: int = 0
    entry_id: str = ""

    @classmethod
    def for_entry(cls, entry: LogEntry) -> "ReplicationCursor":
        return cls(
            machine_id=entry.origin_machine,
            log_offset=entry.log_offset,
            chain_number=entry.chain_number,
            entry_id=entry.entry_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "log_offset": self.log_offset,
            "chain_number": self.chain_number,
            "entry_id": self.entry_id,
        }
