"""
Executor: applies a plan with bounded concurrency.

The dispatcher owns the ready-set and the outcome map. Workers only call the
provider and the state store; they never touch dispatcher state. An operation
is launched once every operation it depends on has succeeded, so a node's
provider call never starts before its dependencies have committed outputs.
"""

import asyncio
import inspect
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from dataclasses import dataclass, field

import structlog

from moraine.core.errors import ApplyError
from moraine.core.hashing import content_hash
from moraine.core.resource import Ref, ResourceNode, resolve
from moraine.planning.plan import Action, Plan, PlannedOperation
from moraine.providers.base import ProviderRegistry
from moraine.state.store import StateStore

logger = structlog.get_logger(__name__)


class NodeStatus(str, Enum):
    """Execution status of one node."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


@dataclass
class NodeOutcome:
    """What happened to one planned operation."""

    node_id: str
    action: Action
    status: NodeStatus = NodeStatus.PENDING
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ApplyResult:
    """Outcomes of one executor run, keyed by node id in plan order."""

    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)

    def _with_status(self, status: NodeStatus) -> list[str]:
        return [node_id for node_id, o in self.outcomes.items() if o.status is status]

    @property
    def succeeded(self) -> list[str]:
        return self._with_status(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(NodeStatus.SKIPPED)

    @property
    def cancelled(self) -> list[str]:
        return self._with_status(NodeStatus.CANCELLED)

    @property
    def rolled_back(self) -> list[str]:
        return self._with_status(NodeStatus.ROLLED_BACK)

    @property
    def changed(self) -> list[str]:
        """Succeeded nodes that required a provider call."""
        return [
            node_id
            for node_id, o in self.outcomes.items()
            if o.status is NodeStatus.SUCCEEDED and o.action is not Action.NOOP
        ]

    @property
    def ok(self) -> bool:
        return all(o.status is NodeStatus.SUCCEEDED for o in self.outcomes.values())

    def outputs(self, node_id: str) -> dict[str, Any]:
        return self.outcomes[node_id].outputs

    def failures(self) -> list[tuple[str, str]]:
        return [
            (node_id, o.error or o.status.value)
            for node_id, o in self.outcomes.items()
            if o.status is not NodeStatus.SUCCEEDED
        ]


class CancellationToken:
    """
    Thread-safe cancellation signal.

    Cancelling stops the dispatch of new operations. Operations already
    running are allowed to finish.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class MissingOutputError(Exception):
    """A referenced output was not produced by its resource."""

    def __init__(self, ref: Ref):
        self.ref = ref
        super().__init__(f"Output '{ref.output}' of '{ref.node_id}' is not available")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


class Executor:
    """
    Applies plans against providers and records results in a state store.

    The executor is responsible for:
    1. Dispatching operations in dependency order, up to ``concurrency`` at once
    2. Resolving refs against outputs produced earlier in the run
    3. Committing each successful node to the state store as it finishes
    4. Isolating failures: dependents are skipped, other branches continue
    5. Optionally rolling back the nodes it created when the run fails

    Example:
        executor = Executor(providers, store, concurrency=8, timeout=300)
        plan = stack.plan(store.load())
        result = executor.execute(plan)
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        concurrency: int = 4,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
        rollback_on_failure: bool = False,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.providers = providers
        self.store = store
        self.concurrency = concurrency
        self.timeout = timeout
        self.cancel = cancel or CancellationToken()
        self.rollback_on_failure = rollback_on_failure
        self.execution_status: dict[str, Any] = {
            "state": "initialized",
            "tasks": {},
        }

    def execute(self, plan: Plan, raise_on_failure: bool = True) -> ApplyResult:
        """
        Apply a plan and block until it finishes.

        Raises:
            ApplyError: If any node failed, was skipped or was cancelled
                (when ``raise_on_failure`` is true)
        """
        return asyncio.run(self.execute_async(plan, raise_on_failure=raise_on_failure))

    async def execute_async(self, plan: Plan, raise_on_failure: bool = True) -> ApplyResult:
        """Coroutine version of ``execute``."""
        operations = {op.node_id: op for op in plan.operations}
        result = ApplyResult(
            outcomes={op.node_id: NodeOutcome(op.node_id, op.action) for op in plan.operations}
        )
        live_outputs = {node_id: dict(entry.outputs) for node_id, entry in plan.previous.entries.items()}

        dependents: dict[str, list[str]] = {node_id: [] for node_id in operations}
        for op in plan.operations:
            for dep in op.dependencies:
                if dep in dependents:
                    dependents[dep].append(op.node_id)

        remaining = [op.node_id for op in plan.operations]
        succeeded: set[str] = set()
        created: list[str] = []
        running: dict[asyncio.Task, str] = {}

        self.execution_status = {"state": "running", "tasks": {n: "pending" for n in operations}}
        logger.info("apply_started", operations=len(operations), concurrency=self.concurrency)

        def set_status(node_id: str, status: NodeStatus, error: str | None = None) -> None:
            outcome = result.outcomes[node_id]
            outcome.status = status
            outcome.error = error
            if status is not NodeStatus.RUNNING:
                outcome.finished_at = _utcnow()
            self.execution_status["tasks"][node_id] = status.value

        def fail(node_id: str, error: str) -> None:
            set_status(node_id, NodeStatus.FAILED, error)
            logger.error("node_failed", node_id=node_id, error=error)
            queue = list(dependents[node_id])
            while queue:
                dependent = queue.pop(0)
                if dependent in remaining:
                    remaining.remove(dependent)
                    set_status(dependent, NodeStatus.SKIPPED, f"dependency '{node_id}' failed")
                    logger.warning("node_skipped", node_id=dependent, failed_dependency=node_id)
                    queue.extend(dependents[dependent])

        def succeed(node_id: str, outputs: dict[str, Any]) -> None:
            result.outcomes[node_id].outputs = outputs
            set_status(node_id, NodeStatus.SUCCEEDED)
            succeeded.add(node_id)
            if result.outcomes[node_id].action is Action.CREATE:
                created.append(node_id)
            if operations[node_id].action is Action.DELETE:
                live_outputs.pop(node_id, None)
            else:
                live_outputs[node_id] = outputs

        while True:
            # Launch everything that is ready. No-ops finish inline, which may
            # make further operations ready, so repeat until nothing changes.
            progressed = True
            while progressed and not self.cancel.cancelled:
                progressed = False
                for node_id in list(remaining):
                    if len(running) >= self.concurrency:
                        break
                    op = operations[node_id]
                    if not all(dep in succeeded for dep in op.dependencies if dep in operations):
                        continue

                    remaining.remove(node_id)
                    progressed = True
                    result.outcomes[node_id].started_at = _utcnow()
                    try:
                        prepared = self._prepare(op, plan, live_outputs)
                    except MissingOutputError as exc:
                        fail(node_id, str(exc))
                        continue

                    if prepared is None:
                        succeed(node_id, live_outputs.get(node_id, {}))
                        logger.debug("node_unchanged", node_id=node_id)
                        continue

                    action, inputs, digest = prepared
                    result.outcomes[node_id].action = action
                    set_status(node_id, NodeStatus.RUNNING)
                    logger.info("node_started", node_id=node_id, action=action.value, kind=op.kind)
                    task = asyncio.create_task(self._run_operation(op, action, inputs, digest, plan))
                    running[task] = node_id

            if self.cancel.cancelled and remaining:
                for node_id in remaining:
                    set_status(node_id, NodeStatus.CANCELLED, "cancelled before start")
                logger.warning("apply_cancelled", not_started=list(remaining))
                remaining.clear()

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                node_id = running.pop(task)
                exc = task.exception()
                if exc is not None:
                    fail(node_id, _describe(exc))
                else:
                    succeed(node_id, task.result())
                    logger.info(
                        "node_succeeded",
                        node_id=node_id,
                        action=result.outcomes[node_id].action.value,
                        duration=result.outcomes[node_id].duration,
                    )

        for node_id in remaining:
            set_status(node_id, NodeStatus.SKIPPED, "dependencies not satisfied")

        if self.rollback_on_failure and created and not result.ok:
            await self._rollback(created, result, plan)

        self.execution_status["state"] = "completed" if result.ok else "failed"
        logger.info(
            "apply_finished",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.skipped),
            cancelled=len(result.cancelled),
            rolled_back=len(result.rolled_back),
        )

        if raise_on_failure and not result.ok:
            raise ApplyError(result.failures(), result)
        return result

    def _prepare(
        self, op: PlannedOperation, plan: Plan, live_outputs: dict[str, dict[str, Any]]
    ) -> tuple[Action, dict[str, Any], str] | None:
        """
        Resolve inputs against live outputs.

        Returns None when a planned no-op is still up to date. A no-op whose
        resolved inputs changed because an upstream node produced new outputs
        in this run is promoted to an update.
        """
        if op.action is Action.DELETE:
            return op.action, {}, ""

        node: ResourceNode = plan.graph.node(op.node_id)

        def lookup(ref: Ref) -> Any:
            outputs = live_outputs.get(ref.node_id)
            if outputs is None or ref.output not in outputs:
                raise MissingOutputError(ref)
            return outputs[ref.output]

        inputs = resolve(node.inputs, lookup)
        digest = content_hash(node.kind, inputs)

        if op.action is Action.NOOP:
            previous = plan.previous.get(op.node_id)
            if previous is not None and previous.content_hash == digest:
                return None
            logger.info("node_promoted_to_update", node_id=op.node_id)
            return Action.UPDATE, inputs, digest

        return op.action, inputs, digest

    async def _run_operation(
        self,
        op: PlannedOperation,
        action: Action,
        inputs: dict[str, Any],
        digest: str,
        plan: Plan,
    ) -> dict[str, Any]:
        try:
            provider = self.providers.get(op.kind)

            if action is Action.DELETE:
                previous = plan.previous.get(op.node_id)
                last_outputs = dict(previous.outputs) if previous is not None else {}
                await self._call(provider.delete, op.kind, last_outputs)
                await asyncio.to_thread(self.store.remove, op.node_id)
                return {}

            outputs = await self._call(provider.apply, op.kind, inputs)
            outputs = dict(outputs or {})
            await asyncio.to_thread(
                self.store.commit,
                op.node_id,
                outputs,
                digest,
                op.kind,
                list(plan.graph.dependencies(op.node_id)),
            )
            return outputs
        except Exception as exc:
            await asyncio.to_thread(self.store.record_failure, op.node_id, _describe(exc))
            raise

    async def _rollback(self, created: list[str], result: ApplyResult, plan: Plan) -> None:
        """
        Delete the nodes created in this run, newest first.

        Completion order puts every node after its dependencies, so walking
        it backwards deletes dependents first. Updates are not reverted. The
        first failed delete stops the rollback; that node and everything
        created before it stay applied and committed.
        """
        logger.warning("rollback_started", nodes=list(reversed(created)))
        for node_id in reversed(created):
            outcome = result.outcomes[node_id]
            kind = plan.operation(node_id).kind
            try:
                provider = self.providers.get(kind)
                await self._call(provider.delete, kind, dict(outcome.outputs))
                await asyncio.to_thread(self.store.remove, node_id)
            except Exception as exc:
                outcome.error = f"rollback failed: {_describe(exc)}"
                logger.error("rollback_failed", node_id=node_id, error=outcome.error)
                return
            outcome.status = NodeStatus.ROLLED_BACK
            outcome.error = "rolled back after failed apply"
            self.execution_status["tasks"][node_id] = NodeStatus.ROLLED_BACK.value
            logger.info("node_rolled_back", node_id=node_id)

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        """
        Call a provider method without blocking the dispatch loop.

        Coroutine functions are awaited directly; anything else runs in a
        worker thread. A timed-out thread cannot be interrupted, but its
        result is discarded and the node is treated as failed.
        """
        if inspect.iscoroutinefunction(func):
            call = func(*args)
        else:
            call = asyncio.to_thread(func, *args)
        if self.timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"provider call timed out after {self.timeout}s") from None

    def get_status(self) -> dict[str, Any]:
        """Get execution status"""
        return self.execution_status
