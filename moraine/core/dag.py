"""
DAG (Directed Acyclic Graph) primitive used by the graph builder and planner.
"""

from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from collections import defaultdict
import heapq


@dataclass
class DAGNode:
    """Represents a node in the DAG."""

    name: str
    payload: Any = None
    index: int = 0
    dependencies: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class DAG:
    """
    Directed Acyclic Graph of named nodes.

    Provides:
    1. Dependency resolution
    2. Deterministic topological sorting (ties broken by insertion order)
    3. Cycle detection with the full cycle path
    4. Execution levels and serialization
    """

    def __init__(self):
        self.nodes: Dict[str, DAGNode] = {}
        self._adjacency_list: Dict[str, List[str]] = defaultdict(list)
        self._reverse_adjacency_list: Dict[str, List[str]] = defaultdict(list)

    def add_node(self, name: str, payload: Any = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Add a node to the DAG. Re-adding an existing name is a no-op."""
        if name not in self.nodes:
            self.nodes[name] = DAGNode(
                name=name, payload=payload, index=len(self.nodes), metadata=metadata or {}
            )

    def add_edge(self, from_node: str, to_node: str) -> None:
        """
        Add a directed edge from one node to another.

        Args:
            from_node: The node that the 'to_node' depends on
            to_node: The dependent node
        """
        if from_node not in self.nodes or to_node not in self.nodes:
            raise ValueError("Both nodes must exist in DAG before adding edge")

        if to_node in self._adjacency_list[from_node]:
            return

        self._adjacency_list[from_node].append(to_node)
        self._reverse_adjacency_list[to_node].append(from_node)

        self.nodes[to_node].dependencies.append(from_node)
        self.nodes[from_node].dependents.append(to_node)

    def get_dependencies(self, node_name: str) -> List[str]:
        """Get all nodes that this node depends on."""
        return self.nodes[node_name].dependencies if node_name in self.nodes else []

    def get_dependents(self, node_name: str) -> List[str]:
        """Get all nodes that depend on this node."""
        return self.nodes[node_name].dependents if node_name in self.nodes else []

    def get_transitive_dependents(self, node_name: str) -> List[str]:
        """Get every node that depends on this node, directly or indirectly."""
        seen: Dict[str, None] = {}
        stack = list(self.get_dependents(node_name))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen[current] = None
            stack.extend(self.get_dependents(current))
        return sorted(seen, key=lambda name: self.nodes[name].index)

    def topological_sort(self) -> List[str]:
        """
        Return a topological ordering of the DAG.

        Among nodes that are ready at the same time, the one added first comes
        first, so the order is reproducible across runs.

        Raises:
            ValueError: If the graph contains cycles
        """
        in_degree = {node: len(self._reverse_adjacency_list[node]) for node in self.nodes}

        ready = [(self.nodes[node].index, node) for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)

            for dependent in self._adjacency_list[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self.nodes[dependent].index, dependent))

        if len(result) != len(self.nodes):
            raise ValueError("DAG contains cycles - cannot perform topological sort")

        return result

    def detect_cycles(self) -> Optional[List[str]]:
        """
        Detect if there are any cycles in the DAG.

        The depth-first search keeps an explicit stack, so long dependency
        chains do not hit the interpreter recursion limit.

        Returns:
            The cycle path (first node repeated at the end) if one exists,
            None otherwise
        """
        visited = set()
        rec_stack = set()
        path: List[str] = []

        for root in self.nodes:
            if root in visited:
                continue

            visited.add(root)
            rec_stack.add(root)
            path.append(root)
            stack = [(root, iter(self._adjacency_list[root]))]

            while stack:
                node, neighbors = stack[-1]
                for neighbor in neighbors:
                    if neighbor not in visited:
                        visited.add(neighbor)
                        rec_stack.add(neighbor)
                        path.append(neighbor)
                        stack.append((neighbor, iter(self._adjacency_list[neighbor])))
                        break
                    if neighbor in rec_stack:
                        cycle_start = path.index(neighbor)
                        return path[cycle_start:] + [neighbor]
                else:
                    stack.pop()
                    path.pop()
                    rec_stack.remove(node)

        return None

    def get_execution_levels(self) -> List[List[str]]:
        """
        Get execution levels for parallel execution.

        Returns a list of lists, where each inner list contains nodes
        that have no dependencies on each other.
        """
        level_of: Dict[str, int] = {}
        levels: List[List[str]] = []

        for node in self.topological_sort():
            deps = self.get_dependencies(node)
            level_idx = max((level_of[dep] + 1 for dep in deps), default=0)
            level_of[node] = level_idx

            while len(levels) <= level_idx:
                levels.append([])

            levels[level_idx].append(node)

        return levels

    def to_dict(self) -> Dict[str, Any]:
        """Convert DAG to dictionary representation for serialization."""
        return {
            "nodes": [
                {
                    "name": node.name,
                    "dependencies": node.dependencies,
                    "dependents": node.dependents,
                    "metadata": node.metadata,
                }
                for node in self.nodes.values()
            ],
            "edges": [
                {"from": from_node, "to": to_node}
                for from_node, to_nodes in self._adjacency_list.items()
                for to_node in to_nodes
            ],
        }

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __repr__(self) -> str:
        return f"DAG(nodes={len(self.nodes)}, edges={sum(len(deps) for deps in self._adjacency_list.values())})"
