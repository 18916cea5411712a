"""
Unit tests for the step graph: toposort, structural checks and next-step resolution.
"""

import pytest

from conftest import make_path
from learnpath.errors import GraphDeadlock, ValidationError
from learnpath.models.path import Step, StepType
from learnpath.utils.step_graph import (
    check_acyclic_and_toposort,
    check_step_graph,
    eligible_steps,
    find_cycle_members,
    next_step,
)


def _step(step_id, order, prereqs=(), path_id="p"):
    return Step(
        id=step_id,
        path_id=path_id,
        title=step_id,
        step_type=StepType.LEARNING,
        order=order,
        prerequisite_ids=frozenset(prereqs),
    )


class TestToposort:
    """Test Kahn's algorithm helper."""

    def test_empty_graph(self):
        assert check_acyclic_and_toposort({}) == (True, [])

    def test_orders_prerequisites_first(self):
        graph = {"c": ["b"], "b": ["a"], "a": []}
        acyclic, order = check_acyclic_and_toposort(graph)
        assert acyclic
        assert order == ["a", "b", "c"]

    def test_ties_broken_by_sort_key(self):
        graph = {"x": [], "y": [], "z": []}
        rank = {"x": 3, "y": 1, "z": 2}
        _, order = check_acyclic_and_toposort(graph, sort_key=lambda n: rank[n])
        assert order == ["y", "z", "x"]

    def test_cycle_detected(self):
        graph = {"a": ["c"], "b": ["a"], "c": ["b"], "d": []}
        acyclic, order = check_acyclic_and_toposort(graph)
        assert not acyclic
        assert order == ["d"]
        assert find_cycle_members(graph) == {"a", "b", "c"}

    def test_unknown_prerequisites_ignored(self):
        acyclic, order = check_acyclic_and_toposort({"a": ["elsewhere"]})
        assert acyclic
        assert order == ["a"]


class TestCheckStepGraph:
    """Test structural checks on a path's steps."""

    def test_valid_graph(self):
        steps = [_step("a", 1), _step("b", 2, ["a"])]
        assert check_step_graph("p", steps) == []

    def test_duplicate_order(self):
        errors = check_step_graph("p", [_step("a", 1), _step("b", 1)])
        assert any("share order 1" in e for e in errors)

    def test_duplicate_id(self):
        errors = check_step_graph("p", [_step("a", 1), _step("a", 2)])
        assert any("Duplicate step id" in e for e in errors)

    def test_cross_path_prerequisite(self):
        errors = check_step_graph("p", [_step("a", 1, ["other-path-step"])])
        assert any("outside path" in e for e in errors)

    def test_step_from_other_path(self):
        errors = check_step_graph("p", [_step("a", 1, path_id="q")])
        assert any("belongs to path 'q'" in e for e in errors)

    def test_self_reference(self):
        errors = check_step_graph("p", [_step("a", 1, ["a"])])
        assert any("itself" in e for e in errors)

    def test_cycle(self):
        steps = [_step("a", 1, ["b"]), _step("b", 2, ["a"])]
        errors = check_step_graph("p", steps)
        assert len(errors) == 1
        assert "cycle" in errors[0]


class TestPathConstruction:
    """Paths refuse invalid step graphs at construction."""

    def test_cyclic_path_rejected(self):
        with pytest.raises(ValidationError) as exc:
            make_path([("A", 1, ["B"]), ("B", 2, ["A"])])
        assert any("cycle" in e for e in exc.value.errors)

    def test_duplicate_order_rejected(self):
        with pytest.raises(ValidationError):
            make_path([("A", 1, []), ("B", 1, [])])

    def test_cross_path_prerequisite_rejected(self):
        with pytest.raises(ValidationError):
            make_path([("A", 1, []), ("B", 2, ["missing"])])


class TestNextStep:
    """Test the next-step resolver."""

    def test_first_step_when_nothing_completed(self, abc_path):
        assert next_step(abc_path.steps, set()).id == "path-abc-A"

    def test_lowest_order_eligible_step_wins(self, abc_path):
        result = next_step(abc_path.steps, {"path-abc-A"})
        assert result.id == "path-abc-B"

    def test_skips_completed_steps(self, abc_path):
        result = next_step(abc_path.steps, {"path-abc-A", "path-abc-B"})
        assert result.id == "path-abc-C"

    def test_none_when_all_completed(self, abc_path):
        assert next_step(abc_path.steps, set(abc_path.step_ids)) is None

    def test_never_returns_step_with_unmet_prerequisites(self):
        steps = [_step("a", 1), _step("b", 2, ["a"]), _step("c", 3)]
        assert next_step(steps, {"x"}).id == "a"
        assert next_step(steps, {"a"}).id == "b"
        result = next_step([steps[1], steps[2]], set())
        assert result.id == "c"

    def test_deadlock_raised_not_none(self):
        # Unreachable through Path validation; resolver must still report it
        steps = [_step("a", 1, ["b"]), _step("b", 2, ["a"])]
        with pytest.raises(GraphDeadlock) as exc:
            next_step(steps, set(), path_id="p")
        assert exc.value.path_id == "p"
        assert set(exc.value.blocked_step_ids) == {"a", "b"}

    def test_eligible_steps(self, abc_path):
        eligible = eligible_steps(abc_path.steps, {"path-abc-A"})
        assert [s.id for s in eligible] == ["path-abc-B", "path-abc-C"]
