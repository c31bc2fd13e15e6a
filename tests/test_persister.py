import threading

from raftkit.raft.persister import Persister


def test_fresh_persister_is_empty():
    p = Persister()
    assert p.read_raft_state() == b""
    assert p.read_snapshot() == b""
    assert p.raft_state_size() == 0
    assert p.snapshot_size() == 0


def test_save_and_read_state():
    p = Persister()
    p.save_raft_state(b"state-bytes")
    assert p.read_raft_state() == b"state-bytes"
    assert p.raft_state_size() == len(b"state-bytes")
    assert p.read_snapshot() == b""


def test_save_state_keeps_snapshot():
    p = Persister()
    p.save_state_and_snapshot(b"s1", b"snap")
    p.save_raft_state(b"s2")
    assert p.read_raft_state() == b"s2"
    assert p.read_snapshot() == b"snap"


def test_save_state_and_snapshot():
    p = Persister()
    p.save_state_and_snapshot(b"abc", b"defgh")
    assert p.read_raft_state() == b"abc"
    assert p.read_snapshot() == b"defgh"
    assert p.raft_state_size() == len(b"abc")
    assert p.snapshot_size() == len(b"defgh")


def test_mutable_input_is_cloned():
    p = Persister()
    buf = bytearray(b"xyz")
    p.save_state_and_snapshot(buf, buf)
    buf[0] = ord("q")
    assert p.read_raft_state() == b"xyz"
    assert p.read_snapshot() == b"xyz"


def test_copy_is_independent():
    p = Persister()
    p.save_state_and_snapshot(b"state", b"snapshot")
    c = p.copy()
    assert c.read_raft_state() == b"state"
    assert c.read_snapshot() == b"snapshot"
    p.save_state_and_snapshot(b"new", b"newer")
    assert c.read_raft_state() == b"state"
    assert c.read_snapshot() == b"snapshot"
    c.save_raft_state(b"other")
    assert p.read_raft_state() == b"new"


def test_concurrent_pairs_stay_consistent():
    p = Persister()
    pairs = [(bytes([i]) * i, bytes([i]) * (2 * i)) for i in range(1, 40)]

    def writer(pair):
        p.save_state_and_snapshot(*pair)

    threads = [threading.Thread(target=writer, args=(pair,)) for pair in pairs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert (p.read_raft_state(), p.read_snapshot()) in pairs
    assert p.snapshot_size() == 2 * p.raft_state_size()