"""
Tests for the executor.
"""

import pytest

from conftest import RecordingProvider
from moraine import (
    Action,
    ApplyError,
    CancellationToken,
    Executor,
    FileStateStore,
    NodeStatus,
    PlanEngine,
    ProviderRegistry,
    Stack,
)


def _chain_stack():
    stack = Stack(name="chain")
    a = stack.resource("A", "k", name="A")
    b = stack.resource("B", "k", name="B", upstream=a.output("id"))
    stack.resource("C", "k", name="C", upstream=b.output("id"))
    return stack


def _apply(stack, registry, store, **kwargs):
    raise_on_failure = kwargs.pop("raise_on_failure", True)
    plan = PlanEngine().plan(stack.nodes, store.load())
    return Executor(registry, store, **kwargs).execute(plan, raise_on_failure=raise_on_failure)


class TestExecutor:
    """Tests for Executor."""

    def test_applies_in_dependency_order(self, provider, registry, store):
        """A dependent is never applied before its dependencies."""
        result = _apply(_chain_stack(), registry, store, concurrency=1)

        assert provider.applied() == ["A", "B", "C"]
        assert result.ok
        assert result.succeeded == ["A", "B", "C"]

    def test_refs_resolved_from_outputs(self, provider, registry, store):
        """Inputs receive the outputs of the nodes they reference."""
        result = _apply(_chain_stack(), registry, store)

        assert result.outputs("B")["upstream"] == "A-id"
        assert result.outputs("C")["upstream"] == "B-id"
        assert store.load().outputs("C")["upstream"] == "B-id"

    def test_every_success_is_committed(self, provider, registry, store):
        """Committed entries carry hash, kind and dependencies."""
        _apply(_chain_stack(), registry, store)

        entry = store.load().get("B")
        assert entry.kind == "k"
        assert entry.dependencies == ["A"]
        assert len(entry.content_hash) == 64

    def test_concurrency_limit(self, store):
        """No more than ``concurrency`` provider calls run at once."""
        provider = RecordingProvider(delay=0.1)
        stack = Stack(name="wide")
        for i in range(6):
            stack.resource(f"n{i}", "k", name=f"n{i}")

        result = _apply(stack, ProviderRegistry(default=provider), store, concurrency=2)

        assert result.ok
        assert provider.max_active == 2

    def test_independent_nodes_run_in_parallel(self, store):
        """Independent nodes overlap when concurrency allows it."""
        provider = RecordingProvider(delay=0.1)
        stack = Stack(name="wide")
        for i in range(4):
            stack.resource(f"n{i}", "k", name=f"n{i}")

        _apply(stack, ProviderRegistry(default=provider), store, concurrency=4)

        assert provider.max_active > 1

    def test_failure_skips_dependents_only(self, store):
        """A failing node skips its dependents while other branches finish."""
        provider = RecordingProvider(fail_on={"B"})
        stack = _chain_stack()
        stack.resource("D", "k", name="D")

        with pytest.raises(ApplyError) as exc_info:
            _apply(stack, ProviderRegistry(default=provider), store)

        result = exc_info.value.result
        assert result.succeeded == ["A", "D"]
        assert result.failed == ["B"]
        assert result.skipped == ["C"]
        assert exc_info.value.node_ids == ["B", "C"]
        assert "provider rejected B" in result.outcomes["B"].error
        assert "C" not in provider.applied()

        snapshot = store.load()
        assert set(snapshot.entries) == {"A", "D"}
        assert "provider rejected B" in snapshot.failures["B"]

    def test_partial_failure_then_retry(self, store):
        """After A and B commit and C fails, a retry only applies C."""
        provider = RecordingProvider(fail_on={"C"})
        registry = ProviderRegistry(default=provider)
        stack = _chain_stack()

        result = _apply(stack, registry, store, raise_on_failure=False)

        assert result.succeeded == ["A", "B"]
        assert result.failed == ["C"]
        assert set(store.load().entries) == {"A", "B"}

        plan = PlanEngine().plan(stack.nodes, store.load())
        assert plan.actions() == {"A": Action.NOOP, "B": Action.NOOP, "C": Action.CREATE}

        provider.fail_on.clear()
        provider.calls.clear()
        result = Executor(registry, store).execute(plan)

        assert provider.applied() == ["C"]
        assert result.changed == ["C"]
        assert store.load().failures == {}

    def test_reapply_is_idempotent(self, provider, registry, store):
        """A second apply of unchanged declarations calls no provider."""
        stack = _chain_stack()
        _apply(stack, registry, store)
        provider.calls.clear()

        plan = PlanEngine().plan(stack.nodes, store.load())
        result = Executor(registry, store).execute(plan)

        assert plan.is_empty
        assert provider.calls == []
        assert result.ok
        assert result.changed == []
        assert result.outputs("C")["upstream"] == "B-id"

    def test_reapply_with_file_store_and_dotted_id(self, provider, registry, tmp_path):
        """A node whose id starts with a dot is applied once and then stays a no-op."""
        store = FileStateStore(tmp_path / "state")
        stack = Stack(name="app")
        stack.resource(".env", "k", name="env")
        _apply(stack, registry, store)
        provider.calls.clear()

        plan = PlanEngine().plan(stack.nodes, store.load())

        assert plan.actions() == {".env": Action.NOOP}
        assert Executor(registry, store).execute(plan).changed == []
        assert provider.calls == []

    def test_noop_promoted_when_upstream_output_changes(self, provider, registry, store):
        """A no-op is re-applied when an upstream update changes a referenced output."""
        stack = Stack(name="app")
        a = stack.resource("A", "k", name="A", size=1)
        stack.resource("B", "k", name="B", size=a.output("size"))
        _apply(stack, registry, store)
        provider.calls.clear()

        stack.get_resource("A").inputs["size"] = 2
        plan = PlanEngine().plan(stack.nodes, store.load())
        assert plan.actions() == {"A": Action.UPDATE, "B": Action.NOOP}

        result = Executor(registry, store).execute(plan)

        assert provider.applied() == ["A", "B"]
        assert result.outcomes["B"].action is Action.UPDATE
        assert store.load().outputs("B")["size"] == 2

    def test_deletes_run_after_dependents(self, provider, registry, store):
        """Removed nodes are deleted dependents-first and leave the state."""
        stack = _chain_stack()
        _apply(stack, registry, store)
        provider.calls.clear()

        keep = Stack(name="chain")
        keep.resource("A", "k", name="A")
        _apply(keep, registry, store, concurrency=1)

        assert provider.deleted() == ["C", "B"]
        assert set(store.load().entries) == {"A"}

    def test_added_depends_on_orders_later_deletes(self, provider, registry, store):
        """An explicit dependency added after the first apply still orders deletes."""
        first = Stack(name="app")
        first.resource("app", "k", name="app")
        first.resource("db", "k", name="db")
        _apply(first, registry, store)

        second = Stack(name="app")
        second.resource("db", "k", name="db")
        second.resource("app", "k", name="app", depends_on=["db"])
        _apply(second, registry, store)

        assert store.load().get("app").dependencies == ["db"]

        provider.calls.clear()
        _apply(Stack(name="app"), registry, store, concurrency=1)

        assert provider.deleted() == ["app", "db"]
        assert len(store.load()) == 0

    def test_timeout_marks_node_failed(self, store):
        """A provider call exceeding the timeout fails the node."""
        provider = RecordingProvider(delay=0.5)
        stack = Stack(name="slow")
        stack.resource("slow", "k", name="slow")

        result = _apply(
            stack, ProviderRegistry(default=provider), store, timeout=0.05, raise_on_failure=False
        )

        assert result.failed == ["slow"]
        assert "timed out" in result.outcomes["slow"].error
        assert "slow" not in store.load()

    def test_cancellation_stops_new_work(self, store):
        """Cancelling lets running work finish and never starts the rest."""
        token = CancellationToken()

        class CancellingProvider(RecordingProvider):
            def apply(self, kind, inputs):
                token.cancel()
                return super().apply(kind, inputs)

        provider = CancellingProvider()
        stack = Stack(name="app")
        stack.resource("first", "k", name="first")
        stack.resource("second", "k", name="second")

        result = _apply(
            stack,
            ProviderRegistry(default=provider),
            store,
            concurrency=1,
            cancel=token,
            raise_on_failure=False,
        )

        assert result.succeeded == ["first"]
        assert result.cancelled == ["second"]
        assert provider.applied() == ["first"]
        assert "first" in store.load()

    def test_rollback_deletes_created_nodes(self, store):
        """With rollback enabled, nodes created by a failed run are deleted newest first."""
        provider = RecordingProvider(fail_on={"C"})
        stack = _chain_stack()
        stack.resource("D", "k", name="D")

        result = _apply(
            stack,
            ProviderRegistry(default=provider),
            store,
            concurrency=1,
            rollback_on_failure=True,
            raise_on_failure=False,
        )

        assert result.failed == ["C"]
        assert result.rolled_back == ["A", "B", "D"]
        assert provider.deleted() == ["D", "B", "A"]
        assert len(store.load()) == 0
        assert "C" in store.load().failures

    def test_rollback_keeps_updates(self, store):
        """Updated nodes are not reverted by a rollback."""
        provider = RecordingProvider()
        registry = ProviderRegistry(default=provider)
        stack = Stack(name="app")
        stack.resource("A", "k", name="A", size=1)
        _apply(stack, registry, store)

        stack.get_resource("A").inputs["size"] = 2
        stack.resource("B", "k", name="B")
        provider.fail_on.add("B")
        result = _apply(stack, registry, store, rollback_on_failure=True, raise_on_failure=False)

        assert result.rolled_back == []
        assert provider.deleted() == []
        assert store.load().outputs("A")["size"] == 2

    def test_missing_provider_fails_node(self, store):
        """A kind without a provider fails that node only."""
        stack = Stack(name="app")
        stack.resource("orphan", "unknown:Kind")

        with pytest.raises(ApplyError) as exc_info:
            _apply(stack, ProviderRegistry(), store)

        assert "ProviderNotFoundError" in exc_info.value.result.outcomes["orphan"].error

    def test_status_reporting(self, provider, registry, store):
        """get_status reports per-node states after a run."""
        stack = _chain_stack()
        plan = PlanEngine().plan(stack.nodes, store.load())
        executor = Executor(registry, store)

        executor.execute(plan)

        status = executor.get_status()
        assert status["state"] == "completed"
        assert status["tasks"] == {n: NodeStatus.SUCCEEDED.value for n in ["A", "B", "C"]}

    def test_invalid_concurrency(self, registry, store):
        """Concurrency must be positive."""
        with pytest.raises(ValueError):
            Executor(registry, store, concurrency=0)
