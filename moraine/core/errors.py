"""
Error taxonomy for Moraine.

Planning errors (GraphError subclasses, PlanConflictError) are raised before
any provider call is made. ApplyError and StageError are raised after partial
work may already have been committed to the state store.
"""

from typing import Any


class MoraineError(Exception):
    """Base class for all Moraine errors."""
    pass


class GraphError(MoraineError):
    """Raised when the declared resources do not form a valid graph."""
    pass


class CycleError(GraphError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"Dependency cycle detected: {' -> '.join(path)}")


class DanglingReferenceError(GraphError):
    """Raised when a node references an id that is not declared."""

    def __init__(self, node_id: str, target: str):
        self.node_id = node_id
        self.target = target
        super().__init__(
            f"Resource '{node_id}' references undeclared resource '{target}'"
        )


class DuplicateNodeError(GraphError):
    """Raised when two declarations share the same id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Resource '{node_id}' is declared more than once")


class PlanConflictError(MoraineError):
    """Raised when a resource scheduled for deletion is still referenced."""

    def __init__(self, deleted: str, dependents: list[str]):
        self.deleted = deleted
        self.dependents = dependents
        super().__init__(
            f"Cannot delete '{deleted}': still referenced by "
            f"{', '.join(repr(d) for d in dependents)}"
        )


class ProviderNotFoundError(MoraineError):
    """Raised when no provider is registered for a resource kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No provider registered for kind '{kind}'")


class StateStoreError(MoraineError):
    """Raised when persisted state cannot be read or written."""
    pass


class ConfigError(MoraineError):
    """Raised for invalid settings or declaration files."""
    pass


class ApplyError(MoraineError):
    """
    Raised when an apply run finishes with failed, skipped or cancelled nodes.

    Attributes:
        failures: (node_id, cause) for every node that did not succeed
        result: The full ApplyResult, including the nodes that succeeded
    """

    def __init__(self, failures: list[tuple[str, str]], result: Any = None):
        self.failures = failures
        self.result = result
        details = "; ".join(f"{node_id}: {cause}" for node_id, cause in failures)
        super().__init__(f"Apply failed for {len(failures)} resource(s): {details}")

    @property
    def node_ids(self) -> list[str]:
        return [node_id for node_id, _ in self.failures]


class StageError(MoraineError):
    """Raised when a pipeline stage fails and halts the run."""

    def __init__(self, stage: str, cause: BaseException | str, run: Any = None):
        self.stage = stage
        self.cause = cause
        self.run = run
        super().__init__(f"Stage '{stage}' failed: {cause}")
