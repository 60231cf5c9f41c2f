"""
Plan engine: diffs desired declarations against a state snapshot.

The plan is an ordered list of operations. Creates, updates and no-ops come
first in topological order of the desired graph, followed by deletes in
reverse topological order of the graph recorded in the snapshot. Planning
never mutates state.
"""

from enum import Enum
from typing import Any, Iterable
from dataclasses import dataclass, field

import structlog

from moraine.core.dag import DAG
from moraine.core.errors import PlanConflictError
from moraine.core.graph import Graph, GraphBuilder
from moraine.core.hashing import content_hash
from moraine.core.resource import Ref, ResourceNode, resolve
from moraine.state.store import StateSnapshot

logger = structlog.get_logger(__name__)

UNKNOWN = "$unknown"


class Action(str, Enum):
    """What the executor should do with a node."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


@dataclass(frozen=True)
class PlannedOperation:
    """One step of a plan."""

    node_id: str
    action: Action
    reason: str
    kind: str
    content_hash: str | None = None
    dependencies: tuple[str, ...] = ()

    @property
    def changes_state(self) -> bool:
        return self.action is not Action.NOOP


@dataclass
class Plan:
    """
    Ordered operations plus the declarations they were computed from.

    ``graph`` is the desired graph; deleted nodes only appear in
    ``operations``.
    """

    operations: tuple[PlannedOperation, ...]
    graph: Graph
    previous: StateSnapshot = field(default_factory=StateSnapshot)

    @property
    def changes(self) -> list[PlannedOperation]:
        return [op for op in self.operations if op.changes_state]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def operation(self, node_id: str) -> PlannedOperation:
        for op in self.operations:
            if op.node_id == node_id:
                return op
        raise KeyError(node_id)

    def actions(self) -> dict[str, Action]:
        """Map of node id to planned action."""
        return {op.node_id: op.action for op in self.operations}

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "operations": [
                {
                    "node_id": op.node_id,
                    "action": op.action.value,
                    "kind": op.kind,
                    "reason": op.reason,
                    "dependencies": list(op.dependencies),
                }
                for op in self.operations
            ],
            "summary": self.summary(),
        }

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)


def resolve_inputs(node: ResourceNode, outputs: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """
    Substitute refs in a node's inputs with recorded outputs.

    A ref whose target or output is not known yet is replaced by an
    ``{"$unknown": "<node>.<output>"}`` marker so that it still hashes
    deterministically.
    """

    def lookup(ref: Ref) -> Any:
        target = outputs.get(ref.node_id)
        if target is None or ref.output not in target:
            return {UNKNOWN: f"{ref.node_id}.{ref.output}"}
        return target[ref.output]

    return resolve(node.inputs, lookup)


class PlanEngine:
    """
    Computes a Plan from declarations and the last applied state.

    Example:
        plan = PlanEngine().plan(stack.nodes, store.load())
        for op in plan:
            print(op.node_id, op.action.value, op.reason)
    """

    def __init__(self, builder: GraphBuilder | None = None):
        self.builder = builder or GraphBuilder()

    def plan(self, nodes: Iterable[ResourceNode], snapshot: StateSnapshot) -> Plan:
        """
        Diff desired nodes against ``snapshot``.

        Raises:
            PlanConflictError: If a node being deleted is still referenced
            CycleError, DanglingReferenceError, DuplicateNodeError: From
                graph validation
        """
        nodes = list(nodes)
        self._check_conflicts(nodes, snapshot)
        graph = self.builder.build(nodes)

        previous_outputs = {node_id: entry.outputs for node_id, entry in snapshot.entries.items()}
        operations: list[PlannedOperation] = []

        for node_id in graph.order:
            node = graph.node(node_id)
            digest = content_hash(node.kind, resolve_inputs(node, previous_outputs))
            entry = snapshot.get(node_id)

            if entry is None:
                action = Action.CREATE
                failure = snapshot.failures.get(node_id)
                reason = f"retry after failure: {failure}" if failure else "not in state"
            elif entry.content_hash != digest:
                action = Action.UPDATE
                failure = snapshot.failures.get(node_id)
                if failure:
                    reason = f"retry after failure: {failure}"
                elif entry.kind and entry.kind != node.kind:
                    reason = f"kind changed from {entry.kind} to {node.kind}"
                else:
                    reason = "inputs changed"
            elif set(entry.dependencies) != set(graph.dependencies(node_id)):
                # Deletes are ordered by recorded edges, so they must be re-committed.
                action = Action.UPDATE
                reason = "dependencies changed"
            else:
                action = Action.NOOP
                reason = "up to date"

            operations.append(
                PlannedOperation(
                    node_id=node_id,
                    action=action,
                    reason=reason,
                    kind=node.kind,
                    content_hash=digest,
                    dependencies=tuple(graph.dependencies(node_id)),
                )
            )

        operations.extend(self._plan_deletes(graph, snapshot))

        plan = Plan(operations=tuple(operations), graph=graph, previous=snapshot)
        logger.info("plan_computed", **plan.summary())
        return plan

    def _check_conflicts(self, nodes: list[ResourceNode], snapshot: StateSnapshot) -> None:
        desired = {node.id for node in nodes}
        referrers: dict[str, list[str]] = {}

        for node in nodes:
            for dep in node.dependencies:
                if dep not in desired and dep in snapshot:
                    referrers.setdefault(dep, []).append(node.id)

        if referrers:
            deleted, dependents = next(iter(referrers.items()))
            raise PlanConflictError(deleted, dependents)

    def _plan_deletes(self, graph: Graph, snapshot: StateSnapshot) -> list[PlannedOperation]:
        stale = [node_id for node_id in snapshot.entries if node_id not in graph]
        if not stale:
            return []

        # Rebuild the old graph from the dependencies recorded at apply time.
        old = DAG()
        for node_id in snapshot.entries:
            old.add_node(node_id)
        for node_id, entry in snapshot.entries.items():
            for dep in entry.dependencies:
                if dep in old:
                    old.add_edge(dep, node_id)

        stale_set = set(stale)
        operations = []
        for node_id in reversed(old.topological_sort()):
            if node_id not in stale_set:
                continue
            # Old dependents must be gone (deleted) or no longer depend on
            # this node (re-applied) before it can be removed.
            waits_for = tuple(
                dependent
                for dependent in old.get_dependents(node_id)
                if dependent in stale_set or dependent in graph
            )
            operations.append(
                PlannedOperation(
                    node_id=node_id,
                    action=Action.DELETE,
                    reason="no longer declared",
                    kind=snapshot.entries[node_id].kind,
                    dependencies=waits_for,
                )
            )
        return operations
