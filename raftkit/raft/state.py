"""The protocol state of one Raft peer, free of threads and networking.

Every method here must be called with the peer's lock held. The methods
take the incoming requests and replies and return what to send or
deliver next, so that the threaded peer only moves messages around.
"""

from __future__ import annotations

import itertools
import pickle
import time
from typing import Any, Optional, Union

from raftkit.raft import settings
from raftkit.raft.log import LogEntry, RaftLog
from raftkit.raft.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    RequestVoteArgs,
    RequestVoteReply,
    Snapshot,
)
from raftkit.raft.persister import Persister
from raftkit.raft.settings import (
    SUCCESSIVE_CONFLICT_OFFSET,
    Backtracking,
    Role,
    logger,
    next_election_deadline,
    next_snapshot_id,
    next_trace_id,
    validate_backtracking_mode,
)

_DECODE_ERRORS = (pickle.UnpicklingError, EOFError, ValueError, TypeError, AttributeError, IndexError)


def _log(message: str, *args: object) -> None:
    if settings.ENABLE_RAFT_LOG:
        logger.info(message, *args)


class RaftState:
    """Persistent and volatile state of a Raft peer and the rules that change it."""

    def __init__(self, me: int, peer_count: int, persister: Persister) -> None:
        self.me = me
        self.peer_count = peer_count
        self.persister = persister
        self.backtracking = validate_backtracking_mode(settings.BACKTRACKING_MODE)

        # persistent on all servers
        self.current_term = 0
        self.voted_for = -1  # -1 means no vote
        self.log = RaftLog()
        self.snapshot = Snapshot()

        # volatile on all servers
        self.commit_index = 0
        self.last_applied = 0

        # volatile on leaders
        self.next_index = [0] * peer_count
        self.match_index = [0] * peer_count

        self.role = Role.FOLLOWER
        self.election_deadline = next_election_deadline()
        self.heartbeat_at = time.monotonic()
        self.last_new_entry_index = -1
        self.first_index_current_term = 0
        self.successive_conflict = [0] * peer_count
        self.snapshot_enabled = True

        self.read_persist(persister.read_raft_state(), persister.read_snapshot())
        self.commit_index = max(self.snapshot.last_included_index, 0)
        self.last_applied = max(self.snapshot.last_included_index, 0)
        self.init_leader_state()

    # ------------------------------------------------------------------
    # persistence

    def persist(self, with_snapshot: bool) -> None:
        """Save term, vote and log; with ``with_snapshot`` also the snapshot, atomically."""
        entries = [(e.index, e.term, e.command) for e in self.log]
        state_data = pickle.dumps((self.current_term, self.voted_for, entries))
        snapshot_data = b""
        if with_snapshot and self.snapshot_enabled:
            snap = self.snapshot
            snapshot_data = pickle.dumps(
                (bytes(snap.data), snap.last_included_index, snap.last_included_term, snap.id)
            )
        if with_snapshot:
            self.persister.save_state_and_snapshot(state_data, snapshot_data)
        else:
            self.persister.save_raft_state(state_data)

    def read_persist(self, state_data: bytes, snapshot_data: bytes) -> None:
        """Restore state saved by ``persist``; empty data leaves everything as is."""
        if not state_data:
            return
        try:
            term, voted_for, entries = pickle.loads(state_data)
            log = RaftLog(LogEntry(index, entry_term, command) for index, entry_term, command in entries)
        except _DECODE_ERRORS as exc:
            raise ValueError(f"peer {self.me}: cannot decode persisted state") from exc
        self.current_term = term
        self.voted_for = voted_for
        self.log = log

        if not snapshot_data:
            _log("peer %d: restored term %d, vote %d, no snapshot", self.me, term, voted_for)
            return
        try:
            data, index, snap_term, snap_id = pickle.loads(snapshot_data)
        except _DECODE_ERRORS:
            _log("peer %d: cannot decode persisted snapshot", self.me)
            return
        self.snapshot = Snapshot(data, index, snap_term, snap_id)
        _log("peer %d: restored term %d, vote %d, snapshot up to %d (term %d)",
             self.me, term, voted_for, index, snap_term)

    # ------------------------------------------------------------------
    # helpers

    def last_log_index_term(self) -> tuple[int, int]:
        """Index and term of the last entry, counting the snapshot."""
        if self.log:
            last = self.log.last()
            return last.index, last.term
        return self.snapshot.last_included_index, self.snapshot.last_included_term

    def next_log_index(self) -> int:
        """The index the next appended entry gets."""
        if self.log:
            return self.log.next_index()
        return self.snapshot.last_included_index + 1

    def init_leader_state(self) -> None:
        """Reset next/match indices and conflict counters for every peer."""
        following = self.next_log_index()
        self.next_index = [following] * self.peer_count
        self.match_index = [0] * self.peer_count
        self.successive_conflict = [SUCCESSIVE_CONFLICT_OFFSET] * self.peer_count

    def step_down(self, term: int) -> None:
        """Adopt ``term`` and become a follower with no vote cast."""
        _log("peer %d: %s becomes follower, term %d -> %d",
             self.me, self.role.value, self.current_term, term)
        self.current_term = term
        self.voted_for = -1
        self.role = Role.FOLLOWER
        self.election_deadline = next_election_deadline()
        self.persist(False)

    # ------------------------------------------------------------------
    # elections

    def begin_election(self) -> RequestVoteArgs:
        """Become a candidate in a new term and return the vote request."""
        self.role = Role.CANDIDATE
        self.current_term += 1
        self.voted_for = self.me
        self.persist(False)
        last_index, last_term = self.last_log_index_term()
        _log("peer %d: becomes candidate at term %d", self.me, self.current_term)
        return RequestVoteArgs(
            trace_id=next_trace_id(),
            term=self.current_term,
            candidate_id=self.me,
            last_log_index=last_index,
            last_log_term=last_term,
        )

    def become_leader(self) -> None:
        """Take leadership of the current term."""
        _log("peer %d: becomes leader at term %d. %s", self.me, self.current_term, self.summary())
        self.role = Role.LEADER
        self.init_leader_state()
        self.first_index_current_term = self.next_log_index()
        self.heartbeat_at = time.monotonic()

    def handle_request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Answer a candidate's vote request."""
        reply = RequestVoteReply(trace_id=args.trace_id)
        try:
            if args.term < self.current_term:
                reply.term = self.current_term
                reply.vote_granted = False
                return reply
            reply.term = args.term
            if args.term > self.current_term:
                self.step_down(args.term)

            my_index, my_term = self.last_log_index_term()
            if args.last_log_term != my_term:
                up_to_date = args.last_log_term >= my_term
            else:
                up_to_date = args.last_log_index >= my_index

            if self.voted_for in (-1, args.candidate_id) and up_to_date:
                reply.vote_granted = True
                self.voted_for = args.candidate_id
                # granting a vote restarts the election timer
                self.election_deadline = next_election_deadline()
                _log("peer %d: votes for %d at term %d", self.me, args.candidate_id, self.current_term)
            return reply
        finally:
            self.persist(False)

    def accept_vote_reply(self, args: RequestVoteArgs, reply: RequestVoteReply) -> bool:
        """Whether ``reply`` is a valid vote for this candidate's election."""
        if reply.term > self.current_term:
            self.step_down(reply.term)
            return False
        if self.role is not Role.CANDIDATE:
            return False
        return args.term == reply.term and reply.vote_granted

    # ------------------------------------------------------------------
    # log replication, follower side

    def handle_append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        """Apply a leader's AppendEntries request to the log."""
        reply = AppendEntriesReply(trace_id=args.trace_id)
        try:
            if args.term < self.current_term:
                reply.term = self.current_term
                reply.success = False
                return reply

            # one leader per term, so any state may reset its timer here
            self.election_deadline = next_election_deadline()
            reply.term = args.term
            if args.term > self.current_term:
                self.step_down(args.term)

            prev_index, prev_term = args.prev_log_index, args.prev_log_term
            entries = list(args.entries)
            snap = self.snapshot

            if prev_index == snap.last_included_index:
                reply.success = prev_term == snap.last_included_term
                if not reply.success:
                    raise RuntimeError(
                        f"peer {self.me}: prev log term {prev_term} != "
                        f"snapshot term {snap.last_included_term}"
                    )
            elif prev_index < snap.last_included_index:
                reply.success = snap.last_included_term <= prev_term
                if reply.success:
                    entries = list(
                        itertools.dropwhile(lambda e: e.index <= snap.last_included_index, entries)
                    )
                    prev_index = snap.last_included_index
                    prev_term = snap.last_included_term
            else:
                entry = self.log.get(prev_index)
                reply.success = entry is not None and entry.term == prev_term

            if not reply.success:
                if self.backtracking is Backtracking.TERM_BYPASS:
                    self._fill_conflict(reply, prev_index, prev_term)
                return reply

            # drop conflicting entries and everything after them
            i, j = prev_index + 1, 0
            while self.log and i < self.log.next_index() and j < len(entries):
                if self.log.get(i).term != entries[j].term:
                    self.log.entries = self.log.get_range(self.log.first().index, i - 1) or []
                    if i <= self.commit_index:
                        raise RuntimeError(
                            f"peer {self.me}: commit index {self.commit_index}, but leader "
                            f"{args.leader_id} overwrites the log from index {i}"
                        )
                    break
                i += 1
                j += 1

            if j < len(entries):
                self.log.append(*entries[j:])
                self.last_new_entry_index = self.log.last().index
                _log("peer %d: appends entries up to %d", self.me, self.last_new_entry_index)

            if args.leader_commit > self.commit_index and self.last_new_entry_index != -1:
                self.commit_index = min(args.leader_commit, self.last_new_entry_index)
                _log("peer %d: commits up to %d at term %d", self.me, self.commit_index, self.current_term)
            return reply
        finally:
            self.persist(False)

    def _fill_conflict(self, reply: AppendEntriesReply, prev_index: int, prev_term: int) -> None:
        entry = self.log.get(prev_index)
        if entry is None:
            reply.conflict_term = -1
            reply.conflict_index = 1  # a snapshot follows in the next round
        elif entry.term != prev_term:
            reply.conflict_term = entry.term
            if self.snapshot.last_included_term == reply.conflict_term:
                # the conflicting term starts inside the snapshot
                reply.conflict_term = -1
                reply.conflict_index = 1
            else:
                reply.conflict_index = prev_index
                first_index = self.log.first().index
                while (
                    reply.conflict_index - 1 >= first_index
                    and self.log.get(reply.conflict_index - 1).term == reply.conflict_term
                ):
                    reply.conflict_index -= 1

    def handle_install_snapshot(
        self, args: InstallSnapshotArgs
    ) -> tuple[InstallSnapshotReply, Optional[ApplyMsg]]:
        """Answer a leader's snapshot; also return the message to hand to the service."""
        reply = InstallSnapshotReply(trace_id=args.trace_id, snapshot_id=args.snapshot_id)
        if args.term < self.current_term:
            reply.term = self.current_term
            return reply, None
        self.election_deadline = next_election_deadline()
        reply.term = args.term
        if args.term > self.current_term:
            self.step_down(args.term)
        _log("peer %d: snapshot from %d up to %d (term %d)",
             self.me, args.leader_id, args.last_included_index, args.last_included_term)
        message = ApplyMsg(
            command_valid=False,
            snapshot_valid=True,
            snapshot=args.data,
            snapshot_index=args.last_included_index,
            snapshot_term=args.last_included_term,
            snapshot_id=args.snapshot_id,
        )
        return reply, message

    # ------------------------------------------------------------------
    # log replication, leader side

    def build_append_entries(
        self, peer: int
    ) -> Union[AppendEntriesArgs, InstallSnapshotArgs, None]:
        """The request that brings ``peer`` up to date, or None if not leader.

        A peer whose next index lies inside the snapshot gets the snapshot.
        """
        if self.role is not Role.LEADER:
            return None
        following = self.next_index[peer]
        if following <= self.snapshot.last_included_index:
            _log("peer %d: peer %d lags behind the snapshot (%d <= %d)",
                 self.me, peer, following, self.snapshot.last_included_index)
            return self.build_install_snapshot()

        prev_index = self.snapshot.last_included_index
        prev_term = self.snapshot.last_included_term
        prev = self.log.get(following - 1)
        if prev is not None:
            prev_index, prev_term = prev.index, prev.term

        entries: list[LogEntry] = []
        if self.log:
            entries = list(self.log.range_from(following) or [])

        return AppendEntriesArgs(
            trace_id=next_trace_id(),
            term=self.current_term,
            leader_id=self.me,
            prev_log_index=prev_index,
            prev_log_term=prev_term,
            entries=entries,
            leader_commit=self.commit_index,
        )

    def build_install_snapshot(self) -> Optional[InstallSnapshotArgs]:
        """The snapshot request for a lagging peer, or None if not leader."""
        if self.role is not Role.LEADER:
            return None
        snap = self.snapshot
        return InstallSnapshotArgs(
            trace_id=next_trace_id(),
            term=self.current_term,
            leader_id=self.me,
            last_included_index=snap.last_included_index,
            last_included_term=snap.last_included_term,
            data=bytes(snap.data),
            snapshot_id=snap.id,
        )

    def on_append_entries_reply(
        self, peer: int, args: AppendEntriesArgs, reply: AppendEntriesReply
    ) -> bool:
        """Handle a peer's AppendEntries reply; returns whether to retry at once."""
        if reply.term > self.current_term:
            self.step_down(reply.term)
        if self.role is not Role.LEADER:
            return False
        if args.term != reply.term:
            return False

        if reply.success:
            # an old reply in this term must not move match index back
            matched = args.prev_log_index + len(args.entries)
            if matched > self.match_index[peer]:
                self.match_index[peer] = matched
                if self.backtracking is not Backtracking.AGGRESSIVE:
                    self.next_index[peer] = matched + 1
            self.successive_conflict[peer] = SUCCESSIVE_CONFLICT_OFFSET
        else:
            mode = self.backtracking
            if mode is Backtracking.TERM_BYPASS:
                found = next(
                    (e.index for e in reversed(self.log.entries[1:]) if e.term == reply.conflict_term),
                    None,
                )
                self.next_index[peer] = found + 1 if found is not None else reply.conflict_index
            elif mode is Backtracking.ORIGINAL:
                self.next_index[peer] -= 1
            elif mode is Backtracking.AGGRESSIVE:
                self.next_index[peer] = 1
            elif mode is Backtracking.BIN_EXP:
                self.next_index[peer] -= 1 << self.successive_conflict[peer]
                self.next_index[peer] = max(self.next_index[peer], 1)
            self.successive_conflict[peer] += 1

        self.next_index[peer] = max(self.next_index[peer], 1)
        self.advance_commit_index()
        return not reply.success

    def on_install_snapshot_reply(
        self, peer: int, last_included_index: int, reply: InstallSnapshotReply
    ) -> None:
        """Handle a peer's reply to a snapshot sent up to ``last_included_index``."""
        if reply.term > self.current_term:
            self.step_down(reply.term)
            return
        if self.role is not Role.LEADER:
            return
        # otherwise the next round would send the snapshot again
        self.next_index[peer] = max(last_included_index + 1, self.next_index[peer])
        self.successive_conflict[peer] = SUCCESSIVE_CONFLICT_OFFSET
        _log("peer %d: next index of %d is %d", self.me, peer, self.next_index[peer])

    def advance_commit_index(self) -> bool:
        """Commit every entry of this term held by a majority; returns whether any was."""
        start = self.commit_index
        candidate = max(self.commit_index + 1, self.first_index_current_term)
        while True:
            entry = self.log.get(candidate)
            if entry is None:
                break
            needed = self.peer_count // 2
            needed -= sum(
                1 for peer, matched in enumerate(self.match_index)
                if peer != self.me and matched >= candidate
            )
            if needed > 0:
                break
            if entry.term != self.current_term:
                raise RuntimeError(
                    f"peer {self.me}: entry {candidate} has term {entry.term}, "
                    f"but the current term is {self.current_term}"
                )
            self.commit_index = candidate
            _log("peer %d: leader commits up to %d at term %d", self.me, candidate, self.current_term)
            candidate += 1
        return self.commit_index > start

    def append_command(self, command: Any) -> tuple[int, int, bool]:
        """Append ``command`` if leader; returns (index, term, is_leader)."""
        if self.role is not Role.LEADER:
            return -1, -1, False
        index = self.next_log_index()
        self.log.append(LogEntry(index=index, term=self.current_term, command=command))
        self.persist(False)
        _log("peer %d: leader appends entry %d at term %d", self.me, index, self.current_term)
        return index, self.current_term, True

    # ------------------------------------------------------------------
    # snapshots and applying

    def take_snapshot(self, index: int, data: bytes) -> bool:
        """Replace the log through ``index`` with the service's snapshot."""
        if not self.snapshot_enabled:
            return False
        if self.log and index < self.log.first().index - 1:
            return False
        if self.snapshot.last_included_index >= index:
            return False
        if self.last_applied < index:
            return False
        entry = self.log.get(index)
        if entry is None:
            raise RuntimeError(f"peer {self.me}: no log entry at snapshot index {index}")

        self.snapshot = Snapshot(
            data=bytes(data),
            last_included_index=index,
            last_included_term=entry.term,
            id=next_snapshot_id(),
        )
        self.persist(True)
        self.log.entries = list(self.log.range_from(index + 1) or [])
        self.persist(False)
        _log("peer %d: snapshot up to %d (term %d), %d bytes",
             self.me, index, entry.term, len(data))
        return True

    def cond_install_snapshot(self, term: int, index: int, snapshot_id: int, data: bytes) -> bool:
        """Whether the service should switch to a snapshot received from a leader."""
        if not self.snapshot_enabled:
            return False
        last = self.log.get(index)
        if last is not None and last.term == term:
            if self.last_applied <= index:
                # applying will catch up with the snapshot on its own
                return False
            if self.snapshot.last_included_index < index:
                self.snapshot.last_included_index = index
                self.snapshot.last_included_term = term
                self.snapshot.data = bytes(data)
                self.persist(True)
                self.log.entries = list(self.log.range_from(index + 1) or [])
                self.persist(False)
                return False
        elif self.last_applied < index:
            _log("peer %d: installs snapshot %d up to %d", self.me, snapshot_id, index)
            self.log.entries = []
            self.snapshot.last_included_index = index
            self.snapshot.last_included_term = term
            self.snapshot.data = bytes(data)
            self.commit_index = index
            self.last_applied = index
            self.persist(True)
            return True
        _log("peer %d: ignores old snapshot up to %d (term %d)", self.me, index, term)
        return False

    def next_apply(self) -> Optional[ApplyMsg]:
        """The next committed entry to hand to the service, or None."""
        if self.commit_index <= self.last_applied:
            return None
        self.last_applied += 1
        entry = self.log.get(self.last_applied)
        if entry is None:
            raise RuntimeError(
                f"peer {self.me}: entry {self.last_applied} to apply is not in the log"
            )
        return ApplyMsg(command_valid=True, command=entry.command, command_index=self.last_applied)

    def summary(self) -> str:
        """A one-line description of snapshot, log and commit progress."""
        if not settings.ENABLE_LOG:
            return "<DATA_SUMMARY>"
        text = (
            f"data summary: snapshot lastIncludedIndex {self.snapshot.last_included_index}, "
            f"lastIncludedTerm {self.snapshot.last_included_term}. log len {len(self.log)}"
        )
        if self.log:
            first = self.log.first()
            text += f". log first entry index {first.index}, term {first.term}"
        text += f". commitIndex {self.commit_index}, lastApplied: {self.last_applied}"
        return text