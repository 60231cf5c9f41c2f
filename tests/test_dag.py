"""
Tests for DAG (Directed Acyclic Graph) functionality.
"""

import pytest
from moraine.core.dag import DAG


def _chain(*names):
    dag = DAG()
    for name in names:
        dag.add_node(name)
    for left, right in zip(names, names[1:]):
        dag.add_edge(left, right)
    return dag


class TestDAG:
    """Tests for DAG class."""

    def test_empty_dag(self):
        """Test creating an empty DAG."""
        dag = DAG()

        assert len(dag.nodes) == 0
        assert dag.topological_sort() == []

    def test_add_node(self):
        """Test adding nodes to DAG."""
        dag = DAG()
        dag.add_node("bucket", payload={"kind": "s3:Bucket"})

        assert "bucket" in dag.nodes
        assert dag.nodes["bucket"].name == "bucket"
        assert dag.nodes["bucket"].payload == {"kind": "s3:Bucket"}

    def test_add_edge(self):
        """Test adding edges between nodes."""
        dag = _chain("table", "function")

        # function depends on table
        assert "table" in dag.nodes["function"].dependencies
        assert "function" in dag.nodes["table"].dependents

    def test_add_edge_requires_nodes(self):
        """Edges between unknown nodes are rejected."""
        dag = DAG()
        dag.add_node("a")

        with pytest.raises(ValueError):
            dag.add_edge("a", "missing")

    def test_duplicate_edge_ignored(self):
        """Adding the same edge twice keeps a single edge."""
        dag = _chain("a", "b")
        dag.add_edge("a", "b")

        assert dag.get_dependencies("b") == ["a"]
        assert len(dag.to_dict()["edges"]) == 1

    def test_topological_sort(self):
        """Test topological sorting of DAG."""
        dag = _chain("task1", "task2", "task3")

        sorted_nodes = dag.topological_sort()

        assert sorted_nodes.index("task1") < sorted_nodes.index("task2")
        assert sorted_nodes.index("task2") < sorted_nodes.index("task3")

    def test_topological_sort_ties_follow_insertion_order(self):
        """Independent nodes come out in the order they were added."""
        dag = DAG()
        for name in ["zeta", "alpha", "mid", "beta"]:
            dag.add_node(name)
        dag.add_edge("mid", "beta")

        assert dag.topological_sort() == ["zeta", "alpha", "mid", "beta"]

    def test_topological_sort_complex(self):
        """Test topological sorting with parallel branches."""
        dag = DAG()

        # Diamond:
        #     task1
        #    /     \
        # task2   task3
        #    \     /
        #     task4
        for i in range(1, 5):
            dag.add_node(f"task{i}")

        dag.add_edge("task1", "task2")
        dag.add_edge("task1", "task3")
        dag.add_edge("task2", "task4")
        dag.add_edge("task3", "task4")

        assert dag.topological_sort() == ["task1", "task2", "task3", "task4"]

    def test_topological_sort_with_cycle_raises(self):
        """Sorting a cyclic graph raises."""
        dag = _chain("a", "b", "c")
        dag.add_edge("c", "a")

        with pytest.raises(ValueError):
            dag.topological_sort()

    def test_cycle_detection(self):
        """Test detecting cycles in DAG."""
        dag = _chain("task1", "task2", "task3")
        dag.add_edge("task3", "task1")

        cycle = dag.detect_cycles()

        assert cycle == ["task1", "task2", "task3", "task1"]

    def test_self_loop_is_cycle(self):
        """A node depending on itself is a cycle of length one."""
        dag = DAG()
        dag.add_node("a")
        dag.add_edge("a", "a")

        assert dag.detect_cycles() == ["a", "a"]

    def test_no_cycle_detection(self):
        """Test that no cycle is detected in valid DAG."""
        dag = _chain("task1", "task2", "task3")

        assert dag.detect_cycles() is None

    def test_deep_chain_cycle_detection(self):
        """Cycle detection walks chains far deeper than the recursion limit."""
        names = [f"n{i}" for i in range(5000)]
        dag = _chain(*names)

        assert dag.detect_cycles() is None

        dag.add_edge("n4999", "n2500")

        assert dag.detect_cycles() == names[2500:] + ["n2500"]

    def test_execution_levels(self):
        """Test getting execution levels for parallel execution."""
        dag = DAG()
        for i in range(1, 5):
            dag.add_node(f"task{i}")

        dag.add_edge("task1", "task2")
        dag.add_edge("task1", "task3")
        dag.add_edge("task2", "task4")
        dag.add_edge("task3", "task4")

        levels = dag.get_execution_levels()

        assert levels == [["task1"], ["task2", "task3"], ["task4"]]

    def test_transitive_dependents(self):
        """Transitive dependents include indirect descendants only."""
        dag = _chain("a", "b", "c")
        dag.add_node("d")
        dag.add_edge("a", "d")
        dag.add_node("other")

        assert dag.get_transitive_dependents("a") == ["b", "c", "d"]
        assert dag.get_transitive_dependents("c") == []

    def test_dag_to_dict(self):
        """Test converting DAG to dictionary."""
        dag = _chain("task1", "task2")

        dag_dict = dag.to_dict()

        assert len(dag_dict["nodes"]) == 2
        assert dag_dict["edges"] == [{"from": "task1", "to": "task2"}]

    def test_get_dependencies(self):
        """Test getting dependencies of a node."""
        dag = DAG()
        for i in range(1, 4):
            dag.add_node(f"task{i}")

        dag.add_edge("task1", "task3")
        dag.add_edge("task2", "task3")

        assert set(dag.get_dependencies("task3")) == {"task1", "task2"}
        assert dag.get_dependencies("unknown") == []

    def test_get_dependents(self):
        """Test getting dependents of a node."""
        dag = DAG()
        for i in range(1, 4):
            dag.add_node(f"task{i}")

        dag.add_edge("task1", "task2")
        dag.add_edge("task1", "task3")

        assert set(dag.get_dependents("task1")) == {"task2", "task3"}
