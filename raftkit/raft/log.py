"""The replicated log: a run of entries with contiguous indices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional


@dataclass(frozen=True)
class LogEntry:
    """One log entry: its position, the term it was created in and its command."""

    index: int
    term: int
    command: Any = None


class RaftLog:
    """Entries with contiguous indices, possibly starting after a snapshot.

    Lookups take absolute log indices, not list positions.
    """

    __slots__ = ("entries",)

    def __init__(self, entries: Optional[Iterable[LogEntry]] = None) -> None:
        self.entries: list[LogEntry] = list(entries) if entries is not None else []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RaftLog):
            return NotImplemented
        return self.entries == other.entries

    def __repr__(self) -> str:
        return f"RaftLog({self.entries!r})"

    def first(self) -> LogEntry:
        """The entry with the lowest index; IndexError if the log is empty."""
        if not self.entries:
            raise IndexError("first() on an empty log")
        return self.entries[0]

    def last(self) -> LogEntry:
        """The entry with the highest index; IndexError if the log is empty."""
        if not self.entries:
            raise IndexError("last() on an empty log")
        return self.entries[-1]

    def next_index(self) -> int:
        """The index the next appended entry will have."""
        return self.last().index + 1

    def contains(self, index: int) -> bool:
        """Whether an entry with this index is held."""
        if not self.entries:
            return False
        return self.entries[0].index <= index <= self.entries[-1].index

    def get(self, index: int) -> Optional[LogEntry]:
        """The entry at ``index``, or None if it is not held."""
        if not self.contains(index):
            return None
        return self.entries[index - self.entries[0].index]

    def get_range(self, start: int, end: int) -> Optional[list[LogEntry]]:
        """Entries from ``start`` to ``end`` inclusive, or None if either is not held."""
        first_index = self.first().index
        if not self.contains(start) or not self.contains(end):
            return None
        if start > end:
            raise ValueError(f"start index ({start}) > end index ({end})")
        return self.entries[start - first_index : end - first_index + 1]

    def range_from(self, start: int) -> Optional[list[LogEntry]]:
        """Entries from ``start`` to the end; empty at ``next_index()``, None outside."""
        first_index = self.first().index
        if not first_index <= start <= self.next_index():
            return None
        return self.entries[start - first_index :]

    def append(self, *args: LogEntry) -> None:
        """Append entries at the end."""
        self.entries.extend(args)