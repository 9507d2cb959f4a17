"""Multi-version read model: a key's main version plus its conflict branches."""

from dataclasses import dataclass
from typing import Iterable

from .entry import LogEntry
from .errors import NoMainVersionError

# Separates the main value from unresolved branch values when rendered.
CONFLICT_MARKER = "(*)"


@dataclass(frozen=True)
class LogicalValue:
    """The logical value of a key as seen by one machine.

    main is the head of the reading machine's own lineage; branches are the
    heads of every other lineage for the same key, in the order they were
    encountered.
    """

    main: LogEntry
    branches: tuple[LogEntry, ...] = ()

    @classmethod
    def from_entries(
        cls, entries: Iterable[LogEntry], machine_id: str
    ) -> "LogicalValue":
        """Fold a key's lineage heads into a logical value.

        Args:
            entries: Current heads for one key, any machine.
            machine_id: Identifier of the reading machine.

        Raises:
            NoMainVersionError: No entry originates from machine_id.
        """
        entries = list(entries)
        main = next(
            (e for e in entries if e.origin_machine == machine_id), None
        )
        if main is None:
            key = entries[0].key if entries else None
            raise NoMainVersionError(
                f"no main version of {key!r} for machine {machine_id!r}",
                key=key,
                machine_id=machine_id,
            )

        branches = tuple(e for e in entries if e.entry_id != main.entry_id)
        return cls(main=main, branches=branches)

    @property
    def key(self) -> str:
        return self.main.key

    @property
    def value(self) -> str:
        return self.main.value

    @property
    def has_conflicts(self) -> bool:
        return bool(self.branches)

    def render(self) -> str:
        """Canonical text form: main value, marker, then branch values."""
        parts = [self.main.value]
        if self.branches:
            parts.append(CONFLICT_MARKER)
        for branch in self.branches:
            parts.append(" ")
            parts.append(branch.value)
        return "".join(parts)

    def __str__(self) -> str:
        return self.render()
