"""
Stack: explicit builder for resource declarations.

A Stack only collects declarations. Nothing is created when a resource is
declared; graph assembly and planning are separate passes over the data.
"""

from typing import Any, TYPE_CHECKING
from dataclasses import dataclass, field

from moraine.core.errors import DuplicateNodeError
from moraine.core.graph import Graph, GraphBuilder
from moraine.core.resource import ResourceNode

if TYPE_CHECKING:
    from moraine.planning.plan import Plan
    from moraine.state.store import StateSnapshot


@dataclass
class Stack:
    """
    Container for the declarations of one deployment.

    Example:
        stack = Stack(name="todo-app")

        table = stack.resource("items", "dynamodb:Table", partition_key="lecture")

        add_item = stack.resource(
            "add_item",
            "lambda:Function",
            handler="index.handler",
            environment={"TABLE_NAME": table.output("table_name")},
        )

        plan = stack.plan(store.load())
    """

    name: str
    """Stack name"""

    _resources: dict[str, ResourceNode] = field(default_factory=dict)
    """Declarations in declaration order"""

    def resource(
        self,
        id: str,
        kind: str,
        inputs: dict[str, Any] | None = None,
        depends_on: list[str | ResourceNode] | None = None,
        **kwargs: Any,
    ) -> ResourceNode:
        """
        Declare a resource.

        Args:
            id: Unique resource id, stable across runs
            kind: Type tag used to select a provider
            inputs: Input mapping; may contain Ref/Format values
            depends_on: Explicit dependencies (ids or nodes)
            **kwargs: Extra inputs, merged over ``inputs``

        Returns:
            The declared ResourceNode; use ``node.output(name)`` to reference
            its outputs from other resources.
        """
        if id in self._resources:
            raise DuplicateNodeError(id)

        merged = dict(inputs or {})
        merged.update(kwargs)
        deps = [dep.id if isinstance(dep, ResourceNode) else dep for dep in depends_on or []]

        node = ResourceNode(id=id, kind=kind, inputs=merged, depends_on=deps)
        self._resources[id] = node
        return node

    def add(self, node: ResourceNode) -> ResourceNode:
        """Add an already constructed declaration."""
        if node.id in self._resources:
            raise DuplicateNodeError(node.id)
        self._resources[node.id] = node
        return node

    def remove(self, id: str) -> ResourceNode | None:
        """Drop a declaration, e.g. to retire a resource on the next apply."""
        return self._resources.pop(id, None)

    @property
    def nodes(self) -> list[ResourceNode]:
        return list(self._resources.values())

    def list_resources(self) -> list[str]:
        """List all declared resource ids."""
        return list(self._resources.keys())

    def get_resource(self, id: str) -> ResourceNode | None:
        """Get a declaration by id."""
        return self._resources.get(id)

    def graph(self) -> Graph:
        """Build and validate the dependency graph."""
        return GraphBuilder().build(self.nodes)

    def plan(self, snapshot: 'StateSnapshot') -> 'Plan':
        """Diff the declarations against a state snapshot."""
        from moraine.planning.plan import PlanEngine

        return PlanEngine().plan(self.nodes, snapshot)

    def __len__(self) -> int:
        return len(self._resources)
