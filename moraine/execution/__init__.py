"""
Plan execution.

The Executor applies a Plan against resource providers, running independent
branches concurrently and committing each node to the state store.
"""

from moraine.execution.executor import (
    ApplyResult,
    CancellationToken,
    Executor,
    NodeOutcome,
    NodeStatus,
)

__all__ = [
    "ApplyResult",
    "CancellationToken",
    "Executor",
    "NodeOutcome",
    "NodeStatus",
]
