"""Tests for the change dependency graph."""

import pytest

from grstack.dependency_graph import DependencyGraph
from grstack.exceptions import AmbiguousRootError, ConflictingParentError
from grstack.models import ChangeMetadata


def linear_graph() -> DependencyGraph:
    """10 <- 11 <- 12"""
    graph = DependencyGraph(root=12)
    graph.insert(11, 10)
    graph.insert(12, 11)
    return graph


class TestInsert:
    """Tests for DependencyGraph.insert."""

    def test_records_both_directions(self) -> None:
        graph = DependencyGraph(root=2)
        graph.insert(2, 1)

        assert graph.depends_on(2) == 1
        assert graph.needed_by(1) == {2}

    def test_same_parent_twice_is_fine(self) -> None:
        graph = DependencyGraph(root=2)
        graph.insert(2, 1)
        graph.insert(2, 1)

        assert graph.depends_on(2) == 1
        assert graph.needed_by(1) == {2}

    def test_conflicting_parent_raises(self) -> None:
        """A second, different parent is rejected and the graph is unchanged."""
        graph = DependencyGraph(root=3)
        graph.insert(3, 1)

        with pytest.raises(ConflictingParentError) as exc_info:
            graph.insert(3, 2)

        assert exc_info.value.change == 3
        assert exc_info.value.existing == 1
        assert exc_info.value.new == 2
        assert graph.depends_on(3) == 1
        assert graph.needed_by(1) == {3}
        assert graph.needed_by(2) == set()

    def test_multiple_children_allowed(self) -> None:
        """A change can be needed by several changes."""
        graph = DependencyGraph(root=1)
        graph.insert(2, 1)
        graph.insert(3, 1)

        assert graph.needed_by(1) == {2, 3}


class TestQueries:
    """Tests for dependency lookups."""

    def test_depends_on_missing(self) -> None:
        assert DependencyGraph(root=1).depends_on(1) is None

    def test_needed_by_missing_is_empty(self) -> None:
        graph = DependencyGraph(root=1)
        assert graph.needed_by(5) == set()

    def test_roots_of_linear_chain(self) -> None:
        graph = linear_graph()

        assert graph.depends_on_roots() == {10}
        assert graph.depends_on_roots(12) == {10}
        assert graph.depends_on_roots(10) == {10}

    def test_dependency_root(self) -> None:
        assert linear_graph().dependency_root() == 10

    def test_cycle_has_no_root(self) -> None:
        graph = DependencyGraph(root=1)
        graph.insert(1, 2)
        graph.insert(2, 1)

        assert graph.depends_on_roots() == set()
        with pytest.raises(AmbiguousRootError) as exc_info:
            graph.dependency_root()
        assert exc_info.value.candidates == []

    def test_walk_from_visits_parents_first(self) -> None:
        graph = linear_graph()
        graph.insert(13, 11)

        assert graph.walk_from(10) == [10, 11, 12, 13]


class TestSerialization:
    """Graphs are persisted inside todo files."""

    def test_json_round_trip(self) -> None:
        graph = linear_graph()
        graph.metadata[10] = ChangeMetadata(id="I" + "0" * 40)

        loaded = DependencyGraph.model_validate_json(graph.model_dump_json())

        assert loaded == graph
        assert loaded.needed_by(10) == {11}


class TestFormatTree:
    """Tests for format_tree."""

    def test_linear(self) -> None:
        graph = linear_graph()

        assert graph.format_tree(lambda change: [str(change)]) == "10\n└─ 11\n   └─ 12\n"

    def test_branches_with_labels(self) -> None:
        graph = DependencyGraph(root=1)
        graph.insert(2, 1)
        graph.insert(3, 1)
        graph.insert(4, 2)

        tree = graph.format_tree(lambda change: [str(change), f"label {change}"])

        assert tree == (
            "1\n"
            "label 1\n"
            "├─ 2\n"
            "│  label 2\n"
            "│  └─ 4\n"
            "│     label 4\n"
            "└─ 3\n"
            "   label 3\n"
        )

    def test_label_called_once_per_change(self) -> None:
        graph = linear_graph()
        calls = []

        def label(change: int) -> list[str]:
            calls.append(change)
            return [str(change)]

        graph.format_tree(label)

        assert sorted(calls) == [10, 11, 12]

    def test_label_errors_propagate(self) -> None:
        def label(change: int) -> list[str]:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            linear_graph().format_tree(label)
