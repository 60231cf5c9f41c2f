"""Persisted state of applied resources."""

from moraine.state.store import (
    FileStateStore,
    MemoryStateStore,
    NodeState,
    StateSnapshot,
    StateStore,
)

__all__ = [
    "FileStateStore",
    "MemoryStateStore",
    "NodeState",
    "StateSnapshot",
    "StateStore",
]
