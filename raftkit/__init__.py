"""Raft peer state and linearizability history types."""

__version__ = "0.1.0"