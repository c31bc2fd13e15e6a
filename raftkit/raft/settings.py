"""Tunable parameters and shared helpers for Raft peers."""

from __future__ import annotations

import enum
import itertools
import logging
import os
import random
import threading
import time
from pathlib import Path
from typing import Optional, Union


class Role(str, enum.Enum):
    FOLLOWER = "follower"
    LEADER = "leader"
    CANDIDATE = "candidate"


class Backtracking(str, enum.Enum):
    """How a leader moves a follower's next index back after a log conflict."""

    ORIGINAL = "Original"
    BIN_EXP = "Binary Exponential"
    TERM_BYPASS = "Conflict Term Bypassing"
    AGGRESSIVE = "Super Aggressive"


# shared parameters
TICKER_INTERVAL = 0.001  # seconds
SUCCESSIVE_CONFLICT_OFFSET = 3
BACKTRACKING_MODE = Backtracking.BIN_EXP

ENABLE_LOG = True  # turn off when measuring performance
LOG_TO_FILE = True
LOG_FILENAME = "app.log"
ENABLE_RAFT_LOG = False
ENABLE_TEST_VERBOSE = True
ENABLE_TRACE_ID = False
ENABLE_SNAPSHOT_ID = False
ENABLE_DEBUG_FAST_FAIL = False

ENABLE_THREAD_COUNT_MONITOR = True
THREAD_COUNT_INTERVAL = 1.0  # seconds
THREAD_COUNT_LOG_FILENAME = "thread_count.log"

# follower parameters
ELECTION_TIMEOUT_MIN_MS = 330
ELECTION_TIMEOUT_MAX_MS = 650

# leader parameters: at most about ten heartbeats per second
HEARTBEAT_INTERVAL = 0.107  # seconds
START_SENDS_APPEND_ENTRIES = True
AE_CONFLICT_RETRIES = 5

DEBUG = False

logger = logging.getLogger("raftkit.raft")

_config_lock = threading.Lock()
_logging_configured = False

_monitor_lock = threading.Lock()
_monitored_paths: set[str] = set()

_trace_lock = threading.Lock()
_trace_ids = itertools.count(1)
_snapshot_lock = threading.Lock()
_snapshot_ids = itertools.count(1)


def validate_backtracking_mode(mode: Union[Backtracking, str]) -> Backtracking:
    """Return ``mode`` as a Backtracking member; ValueError if unknown or unsupported."""
    try:
        chosen = Backtracking(mode)
    except ValueError:
        raise ValueError(f"invalid log backtracking mode: {mode!r}") from None
    if ENABLE_RAFT_LOG:
        logger.info("log backtracking mode: %s", chosen.value)
    if chosen is Backtracking.TERM_BYPASS:
        raise ValueError(
            "conflict term bypassing is not supported once snapshots are in use; "
            "choose another mode"
        )
    return chosen


def configure_logging(path: Union[str, os.PathLike] = LOG_FILENAME) -> bool:
    """Set up the Raft logger once per process; returns whether this call did it."""
    global _logging_configured
    with _config_lock:
        if _logging_configured:
            return False
        _logging_configured = True
        if not ENABLE_LOG:
            logger.addHandler(logging.NullHandler())
            logger.propagate = False
            return True
        logger.setLevel(logging.INFO)
        if LOG_TO_FILE:
            handler: logging.Handler = logging.FileHandler(path, mode="a")
            logger.propagate = False
        else:
            handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s.%(msecs)03d %(filename)s:%(lineno)d: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(handler)
        return True


def logging_configured() -> bool:
    """Whether configure_logging has run in this process."""
    with _config_lock:
        return _logging_configured


def _monitor(file, interval: float) -> None:
    while True:
        time.sleep(interval)
        count = threading.active_count()
        if ENABLE_RAFT_LOG:
            logger.info("current thread count: %d", count)
        try:
            file.write(f"{count}\n")
            file.flush()
        except (OSError, ValueError) as exc:
            if ENABLE_RAFT_LOG:
                logger.info("failed to write thread count: %s", exc)


def start_thread_count_monitor(
    path: Union[str, os.PathLike] = THREAD_COUNT_LOG_FILENAME,
    interval: float = THREAD_COUNT_INTERVAL,
) -> Optional[threading.Thread]:
    """Record the live thread count in ``path`` every ``interval`` seconds.

    The file is recreated first. Only one monitor runs per path; returns the
    monitor thread, or None if disabled, already running, or the file cannot be made.
    """
    if not ENABLE_THREAD_COUNT_MONITOR:
        return None
    target = Path(path)
    key = str(target.resolve())
    with _monitor_lock:
        if key in _monitored_paths:
            return None
        _monitored_paths.add(key)
        try:
            target.unlink(missing_ok=True)
            file = open(target, "w", encoding="utf-8")
        except OSError as exc:
            if ENABLE_RAFT_LOG:
                logger.info("failed to prepare thread count file: %s", exc)
            return None
    thread = threading.Thread(
        target=_monitor, args=(file, interval), name="thread-count-monitor", daemon=True
    )
    thread.start()
    return thread


def election_timeout() -> float:
    """A random election timeout in seconds."""
    ms = ELECTION_TIMEOUT_MIN_MS + random.randrange(
        ELECTION_TIMEOUT_MAX_MS - ELECTION_TIMEOUT_MIN_MS
    )
    return ms / 1000


def next_election_deadline() -> float:
    """A ``time.monotonic()`` instant one random election timeout from now."""
    return time.monotonic() + election_timeout()


def next_heartbeat_time() -> float:
    """A ``time.monotonic()`` instant one heartbeat interval from now."""
    return time.monotonic() + HEARTBEAT_INTERVAL


def next_trace_id() -> int:
    """A fresh RPC trace id, or 0 when tracing is off."""
    if not ENABLE_TRACE_ID:
        return 0
    with _trace_lock:
        return next(_trace_ids)


def next_snapshot_id() -> int:
    """A fresh snapshot id, or 0 when snapshot ids are off."""
    if not ENABLE_SNAPSHOT_ID:
        return 0
    with _snapshot_lock:
        return next(_snapshot_ids)


def debug_print(message: str, *args: object) -> None:
    """Log ``message % args`` when debugging is on."""
    if DEBUG:
        logger.info(message, *args)