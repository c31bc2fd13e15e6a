"""Storage for a peer's persistent Raft state and service snapshot."""

from __future__ import annotations

import threading


class Persister:
    """Holds the latest Raft state and snapshot as byte strings.

    Saving state and snapshot together is atomic, so they never get out of sync.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raft_state = b""
        self._snapshot = b""

    def copy(self) -> Persister:
        """A new persister holding the same state and snapshot."""
        with self._lock:
            other = Persister()
            other._raft_state = self._raft_state
            other._snapshot = self._snapshot
            return other

    def save_raft_state(self, state: bytes) -> None:
        with self._lock:
            self._raft_state = bytes(state)

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raft_state

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raft_state)

    def save_state_and_snapshot(self, state: bytes, snapshot: bytes) -> None:
        """Save Raft state and snapshot as a single atomic action."""
        with self._lock:
            self._raft_state = bytes(state)
            self._snapshot = bytes(snapshot)

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)