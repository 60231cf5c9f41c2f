"""
Dependency graph builder.

Turns a sequence of ResourceNode declarations into a validated Graph. Edges
come from explicit ``depends_on`` entries and from every Ref found in a
node's inputs.
"""

from typing import Any, Iterable

import structlog

from moraine.core.dag import DAG
from moraine.core.errors import CycleError, DanglingReferenceError, DuplicateNodeError
from moraine.core.resource import ResourceNode

logger = structlog.get_logger(__name__)


class Graph:
    """
    A validated, acyclic resource graph.

    Nodes keep their declaration order; ``order`` is the deterministic
    topological order computed once at build time.
    """

    def __init__(self, dag: DAG, order: list[str]):
        self._dag = dag
        self.order = order

    @property
    def nodes(self) -> dict[str, ResourceNode]:
        return {name: node.payload for name, node in self._dag.nodes.items()}

    def node(self, node_id: str) -> ResourceNode:
        return self._dag.nodes[node_id].payload

    def dependencies(self, node_id: str) -> list[str]:
        return list(self._dag.get_dependencies(node_id))

    def dependents(self, node_id: str) -> list[str]:
        return list(self._dag.get_dependents(node_id))

    def transitive_dependents(self, node_id: str) -> list[str]:
        return self._dag.get_transitive_dependents(node_id)

    def levels(self) -> list[list[str]]:
        """Groups of nodes that can be applied in parallel."""
        return self._dag.get_execution_levels()

    def to_dict(self) -> dict[str, Any]:
        data = self._dag.to_dict()
        for entry in data["nodes"]:
            entry["kind"] = self.node(entry["name"]).kind
        data["order"] = list(self.order)
        return data

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._dag

    def __len__(self) -> int:
        return len(self._dag)

    def __iter__(self):
        return iter(self.order)

    def __repr__(self) -> str:
        return f"Graph({self._dag!r})"


class GraphBuilder:
    """
    Assembles declarations into a Graph.

    Example:
        graph = GraphBuilder().build(stack.nodes)
        for node_id in graph.order:
            ...
    """

    def build(self, nodes: Iterable[ResourceNode]) -> Graph:
        """
        Build and validate the graph.

        Raises:
            DuplicateNodeError: If two declarations share an id
            DanglingReferenceError: If a dependency targets an undeclared id
            CycleError: If the dependencies form a cycle
        """
        dag = DAG()

        for node in nodes:
            if node.id in dag:
                raise DuplicateNodeError(node.id)
            dag.add_node(node.id, node, metadata={"kind": node.kind})

        for name, dag_node in dag.nodes.items():
            for dep in dag_node.payload.dependencies:
                if dep not in dag:
                    raise DanglingReferenceError(name, dep)
                dag.add_edge(dep, name)

        cycle = dag.detect_cycles()
        if cycle:
            raise CycleError(cycle)

        order = dag.topological_sort()
        logger.debug("graph_built", nodes=len(dag), order=order)
        return Graph(dag, order)
