"""
Moraine: declarative infrastructure provisioning engine.

Moraine takes a graph of resource declarations, diffs it against the last
applied state, and applies the difference through pluggable providers.

Core concepts:
- Stack: collects resource declarations (pure data)
- Ref / Format: deferred references to outputs of other resources
- PlanEngine: computes create / update / delete / no-op operations
- Executor: applies a plan concurrently, in dependency order
- StateStore: durable per-node record of what was applied
- Pipeline: source -> build -> deploy stages gated on success

Example:
    from moraine import Stack, PlanEngine, Executor, FileStateStore, ProviderRegistry
    from moraine.providers import LocalProvider

    stack = Stack(name="todo-app")
    table = stack.resource("items", "dynamodb:Table", partition_key="lecture")
    stack.resource(
        "add_item",
        "lambda:Function",
        environment={"TABLE_NAME": table.output("table_name")},
    )

    store = FileStateStore(".moraine/state")
    plan = PlanEngine().plan(stack.nodes, store.load())
    Executor(ProviderRegistry(default=LocalProvider()), store).execute(plan)
"""

from moraine.core.errors import (
    ApplyError,
    ConfigError,
    CycleError,
    DanglingReferenceError,
    DuplicateNodeError,
    GraphError,
    MoraineError,
    PlanConflictError,
    ProviderNotFoundError,
    StageError,
    StateStoreError,
)
from moraine.core.resource import Format, Ref, ResourceNode
from moraine.core.stack import Stack
from moraine.core.graph import Graph, GraphBuilder
from moraine.planning.plan import Action, Plan, PlanEngine, PlannedOperation
from moraine.state.store import FileStateStore, MemoryStateStore, StateSnapshot, StateStore
from moraine.providers.base import ProviderRegistry, ResourceProvider
from moraine.execution.executor import ApplyResult, CancellationToken, Executor, NodeStatus
from moraine.pipeline.orchestrator import Pipeline, PipelineRun, Stage
from moraine.config.settings import MoraineSettings

__version__ = "0.1.0"
__all__ = [
    # Errors
    "ApplyError",
    "ConfigError",
    "CycleError",
    "DanglingReferenceError",
    "DuplicateNodeError",
    "GraphError",
    "MoraineError",
    "PlanConflictError",
    "ProviderNotFoundError",
    "StageError",
    "StateStoreError",
    # Declarations
    "Format",
    "Ref",
    "ResourceNode",
    "Stack",
    "Graph",
    "GraphBuilder",
    # Planning and execution
    "Action",
    "Plan",
    "PlanEngine",
    "PlannedOperation",
    "FileStateStore",
    "MemoryStateStore",
    "StateSnapshot",
    "StateStore",
    "ProviderRegistry",
    "ResourceProvider",
    "ApplyResult",
    "CancellationToken",
    "Executor",
    "NodeStatus",
    # Pipelines
    "Pipeline",
    "PipelineRun",
    "Stage",
    "MoraineSettings",
]
