"""
Core Moraine functionality.

- ResourceNode / Ref / Format: declarations and deferred values
- Stack: explicit builder for declarations
- GraphBuilder / Graph: validated dependency graph
"""

from moraine.core.resource import Format, Ref, ResourceNode
from moraine.core.stack import Stack
from moraine.core.graph import Graph, GraphBuilder

__all__ = [
    "Format",
    "Ref",
    "ResourceNode",
    "Stack",
    "Graph",
    "GraphBuilder",
]
