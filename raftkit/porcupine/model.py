"""Histories, models and results for linearizability checking."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass(frozen=True)
class Operation:
    """A completed operation: its input, output and call/return times."""

    input: Any
    call: int
    output: Any
    return_: int
    client_id: int = 0


class EventKind(enum.Enum):
    CALL = "call"
    RETURN = "return"


@dataclass(frozen=True)
class Event:
    """One half of an operation; calls and returns are paired by ``id``."""

    kind: EventKind
    value: Any
    id: int
    client_id: int = 0


class CheckResult(str, enum.Enum):
    UNKNOWN = "Unknown"  # timed out
    OK = "Ok"
    ILLEGAL = "Illegal"


def no_partition(history: list[Operation]) -> list[list[Operation]]:
    """Treat the whole history as one partition."""
    return [history]


def no_partition_event(history: list[Event]) -> list[list[Event]]:
    """Treat the whole event history as one partition."""
    return [history]


def shallow_equal(state1: Any, state2: Any) -> bool:
    return state1 == state2


def default_describe_operation(input: Any, output: Any) -> str:
    return f"{input} -> {output}"


def default_describe_state(state: Any) -> str:
    return f"{state}"


@dataclass
class Model:
    """A sequential specification of a system.

    ``step(state, input, output)`` returns ``(ok, new_state)`` and must not
    mutate ``state``. Optional hooks left as ``None`` get the defaults.
    """

    init: Callable[[], Any]
    step: Callable[[Any, Any, Any], tuple[bool, Any]]
    partition: Optional[Callable[[list[Operation]], list[list[Operation]]]] = None
    partition_event: Optional[Callable[[list[Event]], list[list[Event]]]] = None
    equal: Optional[Callable[[Any, Any], bool]] = None
    describe_operation: Optional[Callable[[Any, Any], str]] = None
    describe_state: Optional[Callable[[Any], str]] = None

    def __post_init__(self) -> None:
        if self.partition is None:
            self.partition = no_partition
        if self.partition_event is None:
            self.partition_event = no_partition_event
        if self.equal is None:
            self.equal = shallow_equal
        if self.describe_operation is None:
            self.describe_operation = default_describe_operation
        if self.describe_state is None:
            self.describe_state = default_describe_state