import pytest

from raftkit.raft.log import LogEntry
from raftkit.raft.messages import AppendEntriesArgs, AppendEntriesReply, InstallSnapshotArgs, RequestVoteArgs
from raftkit.raft.persister import Persister
from raftkit.raft.settings import SUCCESSIVE_CONFLICT_OFFSET, Role
from raftkit.raft.state import RaftState


def make_cluster(n=3):
    return [RaftState(i, n, Persister()) for i in range(n)]


def elect(cluster, me, voters=None):
    candidate = cluster[me]
    args = candidate.begin_election()
    votes = 0
    for i, peer in enumerate(cluster):
        if i == me or (voters is not None and i not in voters):
            continue
        if candidate.accept_vote_reply(args, peer.handle_request_vote(args)):
            votes += 1
    assert votes >= len(cluster) // 2
    candidate.become_leader()
    return candidate


def replicate(cluster, leader, targets=None):
    for i, follower in enumerate(cluster):
        if follower is leader or (targets is not None and i not in targets):
            continue
        request = leader.build_append_entries(i)
        if isinstance(request, InstallSnapshotArgs):
            reply, _ = follower.handle_install_snapshot(request)
            leader.on_install_snapshot_reply(i, request.last_included_index, reply)
        else:
            reply = follower.handle_append_entries(request)
            leader.on_append_entries_reply(i, request, reply)


def drain(state):
    out = []
    while (msg := state.next_apply()) is not None:
        out.append(msg)
    return out


def test_fresh_state():
    state = RaftState(0, 3, Persister())
    assert state.current_term == 0
    assert state.voted_for == -1
    assert state.role is Role.FOLLOWER
    assert state.last_log_index_term() == (0, 0)
    assert state.next_log_index() == 1
    assert state.next_index == [1, 1, 1]
    assert state.next_apply() is None


def test_persist_round_trip():
    persister = Persister()
    state = RaftState(0, 3, persister)
    state.step_down(4)
    state.voted_for = 2
    state.log.append(LogEntry(1, 4, "a"), LogEntry(2, 4, {"k": 1}))
    state.persist(False)
    restored = RaftState(0, 3, persister)
    assert restored.current_term == 4
    assert restored.voted_for == 2
    assert restored.log == state.log
    assert restored.next_index == [3, 3, 3]


def test_read_persist_rejects_garbage():
    state = RaftState(0, 3, Persister())
    with pytest.raises(ValueError):
        state.read_persist(b"not a state", b"")


def test_non_leader_cannot_append():
    state = RaftState(0, 3, Persister())
    index, term, ok = state.append_command("x")
    assert ok is False
    assert len(state.log) == 0
    assert state.build_append_entries(1) is None


def test_election_and_leadership():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    assert leader.role is Role.LEADER
    assert leader.current_term == 1
    assert leader.voted_for == 0
    assert all(peer.current_term == 1 and peer.voted_for == 0 for peer in cluster[1:])
    assert leader.next_index == [leader.next_log_index()] * 3


def test_vote_refused_for_stale_term_and_second_candidate():
    cluster = make_cluster()
    elect(cluster, 0)
    voter = cluster[1]
    second = RequestVoteArgs(term=1, candidate_id=2, last_log_index=5, last_log_term=1)
    assert voter.handle_request_vote(second).vote_granted is False
    stale = RequestVoteArgs(term=0, candidate_id=2)
    reply = voter.handle_request_vote(stale)
    assert reply.vote_granted is False
    assert reply.term == voter.current_term


def test_vote_refused_for_outdated_log():
    voter = RaftState(1, 3, Persister())
    voter.log.append(LogEntry(1, 2, "a"))
    args = RequestVoteArgs(term=3, candidate_id=0, last_log_index=9, last_log_term=1)
    reply = voter.handle_request_vote(args)
    assert reply.vote_granted is False
    assert voter.current_term == 3
    assert voter.voted_for == -1


def test_replication_commits_and_applies():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    commands = ["a", "b", "c"]
    indices = [leader.append_command(c)[0] for c in commands]
    replicate(cluster, leader)
    replicate(cluster, leader)
    assert leader.commit_index == indices[-1]
    for peer in cluster:
        assert peer.log == leader.log
        assert peer.commit_index == leader.commit_index
        applied = drain(peer)
        assert [m.command for m in applied] == commands
        assert [m.command_index for m in applied] == indices


def test_stale_append_entries_rejected():
    follower = RaftState(1, 3, Persister())
    follower.step_down(5)
    reply = follower.handle_append_entries(AppendEntriesArgs(term=3, leader_id=0))
    assert reply.success is False
    assert reply.term == 5


def test_mismatch_at_snapshot_point_raises():
    follower = RaftState(1, 3, Persister())
    args = AppendEntriesArgs(term=1, leader_id=0, prev_log_index=0, prev_log_term=7)
    with pytest.raises(RuntimeError):
        follower.handle_append_entries(args)


def test_failed_reply_backs_off_and_retry_succeeds():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    for c in "abc":
        leader.append_command(c)
    leader.init_leader_state()
    request = leader.build_append_entries(1)
    reply = cluster[1].handle_append_entries(request)
    assert reply.success is False
    assert leader.on_append_entries_reply(1, request, reply) is True
    assert leader.next_index[1] == 1
    assert leader.successive_conflict[1] == SUCCESSIVE_CONFLICT_OFFSET + 1
    replicate(cluster, leader, targets={1})
    assert cluster[1].log == leader.log
    assert leader.successive_conflict[1] == SUCCESSIVE_CONFLICT_OFFSET


def test_higher_term_reply_steps_down():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    request = leader.build_append_entries(1)
    higher = leader.current_term + 1
    reply = AppendEntriesReply(term=higher, success=False)
    assert leader.on_append_entries_reply(1, request, reply) is False
    assert leader.role is Role.FOLLOWER
    assert leader.current_term == higher
    assert leader.voted_for == -1


def test_take_snapshot_and_restore():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    for c in "abc":
        leader.append_command(c)
    replicate(cluster, leader)
    drain(leader)
    assert leader.take_snapshot(2, b"snap") is True
    assert leader.snapshot.last_included_index == 2
    assert leader.log.first().index == 3
    assert leader.persister.read_snapshot() != b""
    assert leader.take_snapshot(1, b"old") is False
    assert leader.take_snapshot(leader.last_applied + 1, b"new") is False

    restored = RaftState(0, 3, leader.persister)
    assert restored.snapshot.data == b"snap"
    assert restored.snapshot.last_included_index == 2
    assert restored.commit_index == 2
    assert restored.last_applied == 2
    assert restored.log == leader.log


def test_snapshot_disabled():
    state = RaftState(0, 3, Persister())
    state.snapshot_enabled = False
    assert state.take_snapshot(1, b"x") is False
    assert state.cond_install_snapshot(1, 1, 0, b"x") is False


def test_lagging_follower_gets_snapshot():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    for c in "abc":
        leader.append_command(c)
    replicate(cluster, leader, targets={1})
    replicate(cluster, leader, targets={1})
    drain(leader)
    assert leader.take_snapshot(2, b"snap")

    request = leader.build_append_entries(2)
    assert isinstance(request, InstallSnapshotArgs)
    follower = cluster[2]
    reply, message = follower.handle_install_snapshot(request)
    assert message.snapshot_valid is True
    assert message.snapshot == b"snap"
    installed = follower.cond_install_snapshot(
        message.snapshot_term, message.snapshot_index, message.snapshot_id, message.snapshot
    )
    assert installed is True
    assert follower.commit_index == request.last_included_index
    assert follower.last_applied == request.last_included_index
    assert len(follower.log) == 0

    leader.on_install_snapshot_reply(2, request.last_included_index, reply)
    assert leader.next_index[2] == request.last_included_index + 1
    replicate(cluster, leader, targets={2})
    assert follower.log == leader.log


def test_stale_install_snapshot_has_no_message():
    follower = RaftState(1, 3, Persister())
    follower.step_down(4)
    reply, message = follower.handle_install_snapshot(InstallSnapshotArgs(term=2))
    assert message is None
    assert reply.term == 4


def test_summary_reports_progress():
    cluster = make_cluster()
    leader = elect(cluster, 0)
    leader.append_command("a")
    text = leader.summary()
    assert "commitIndex 0" in text
    assert "log len 1" in text