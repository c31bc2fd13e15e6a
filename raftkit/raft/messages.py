"""Messages exchanged between Raft peers and with the service above them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from raftkit.raft.log import LogEntry


@dataclass
class ApplyMsg:
    """Delivered to the service for each committed entry or installed snapshot.

    ``command_valid`` marks a committed log entry; ``snapshot_valid`` marks a
    snapshot sent by a leader that the service may switch to.
    """

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0
    snapshot_id: int = 0


@dataclass
class Snapshot:
    """The service's snapshot and the last log position it covers."""

    data: bytes = b""
    last_included_index: int = 0
    last_included_term: int = 0
    id: int = 0


@dataclass
class RequestVoteArgs:
    trace_id: int = 0
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    trace_id: int = 0
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    trace_id: int = 0
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    """Reply to AppendEntries; the conflict fields use -1 for "none"."""

    trace_id: int = 0
    term: int = 0
    success: bool = False
    conflict_index: int = -1
    conflict_term: int = -1


@dataclass
class InstallSnapshotArgs:
    trace_id: int = 0
    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    data: bytes = b""
    snapshot_id: int = 0


@dataclass
class InstallSnapshotReply:
    trace_id: int = 0
    term: int = 0
    snapshot_id: int = 0