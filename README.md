# raftkit

`raftkit` holds the building blocks of a Raft consensus peer and the data
types for describing concurrent operation histories:

- `raftkit.raft`: the protocol state of one Raft peer (leader election, log
  replication, persistence and log compaction through snapshots), kept apart
  from threads, timers and networking so you drive it yourself.
- `raftkit.porcupine`: histories, events and sequential models for
  linearizability checking.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The Raft peer state

`raftkit.raft.state.RaftState` is one peer's state and the rules that change
it. Each method takes a request or reply and returns what to send or deliver
next; callers that share a `RaftState` between threads must hold their own
lock around every call.

```python
from raftkit.raft.persister import Persister
from raftkit.raft.state import RaftState

a = RaftState(me=0, peer_count=3, persister=Persister())
b = RaftState(me=1, peer_count=3, persister=Persister())

# election
vote_request = a.begin_election()
vote_reply = b.handle_request_vote(vote_request)
if a.accept_vote_reply(vote_request, vote_reply):  # one vote plus its own is a majority of 3
    a.become_leader()

# replication
index, term, is_leader = a.append_command("x")      # (1, 1, True)
request = a.build_append_entries(1)
reply = b.handle_append_entries(request)
retry_now = a.on_append_entries_reply(1, request, reply)

message = a.next_apply()   # ApplyMsg(command_valid=True, command="x", command_index=1)
```

Other parts of the state:

- `build_append_entries(peer)` returns an `InstallSnapshotArgs` instead when
  the peer's next index lies inside the snapshot; answer it with
  `handle_install_snapshot(args)`, which returns the reply and the `ApplyMsg`
  to hand to the service, and feed the reply back with
  `on_install_snapshot_reply(peer, last_included_index, reply)`.
- `take_snapshot(index, data)` replaces the log through `index` with the
  service's snapshot, once that index has been applied.
- `cond_install_snapshot(term, index, snapshot_id, data)` tells the service
  whether to switch to a snapshot received from a leader.
- `step_down(term)`, `advance_commit_index()`, `last_log_index_term()`,
  `next_log_index()` and `summary()` are available for finer control and
  inspection.

Every change to term, vote, log or snapshot is written through `persist` to
the peer's `raftkit.raft.persister.Persister`, and a new `RaftState` built on
the same persister restores it. The persisted bytes are pickled, so only read
state you wrote yourself.

### Supporting modules

- `raftkit.raft.log`: `LogEntry` and `RaftLog`, a log addressed by absolute
  index that may start after a snapshot (`get`, `get_range`, `range_from`,
  `first`, `last`, `next_index`, `contains`, `append`).
- `raftkit.raft.persister`: `Persister`, a thread-safe holder of Raft state
  and snapshot bytes; `save_state_and_snapshot` stores both atomically.
- `raftkit.raft.messages`: `ApplyMsg`, `Snapshot` and the request/reply
  dataclasses for RequestVote, AppendEntries and InstallSnapshot.
- `raftkit.raft.settings`: `Role`, `Backtracking` (the log back-tracking
  modes; `validate_backtracking_mode` rejects conflict term bypassing),
  timing constants such as a 330–650 ms election timeout and a 107 ms
  heartbeat interval, `election_timeout()`, `next_election_deadline()`,
  `next_heartbeat_time()`, trace and snapshot id counters,
  `configure_logging(path)` (by default appends to `app.log`) and
  `start_thread_count_monitor(path, interval)`.

## Histories and models

`raftkit.porcupine.model` describes what a linearizability check works on:

```python
from raftkit.porcupine.model import Model, Operation

def step(state, op, output):
    kind, value = op
    if kind == "write":
        return True, value
    return output == state, state

register = Model(init=lambda: 0, step=step)

history = [
    Operation(input=("write", 1), call=0, output=None, return_=10, client_id=0),
    Operation(input=("read", None), call=5, output=1, return_=15, client_id=1),
]
```

`Event` and `EventKind` describe the same history as separate call and return
events paired by `id`. A `Model` left without its optional hooks gets
`no_partition`, `no_partition_event`, `shallow_equal`,
`default_describe_operation` and `default_describe_state`. `CheckResult`
names the outcomes `OK`, `ILLEGAL` and `UNKNOWN`.

## What this package does not do

- It does not check histories for linearizability; it only provides the
  history, event, model and result types.
- It has no running Raft peer: no background threads, election or heartbeat
  timers, apply loop or network transport. Those are up to the caller, who
  moves the messages `RaftState` produces between peers.
- There is no command-line program.