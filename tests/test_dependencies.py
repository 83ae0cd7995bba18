"""Tests for storyflow.epic.dependencies module."""

import pytest

from storyflow.epic.dependencies import (
    DependencyError,
    group_into_phases,
    validate_dependencies,
)


def ids(phases):
    return [[s.id for s in phase] for phase in phases]


class TestValidateDependencies:

    def test_valid_graph(self, make_story):
        stories = [make_story("A"), make_story("B", dependencies=["A"])]
        result = validate_dependencies(stories, set())
        assert result.valid
        assert result.errors == []

    def test_self_dependency(self, make_story):
        result = validate_dependencies([make_story("A", dependencies=["A"])], set())
        assert not result.valid
        assert result.errors == ["Story A depends on itself"]

    def test_unknown_dependency(self, make_story):
        result = validate_dependencies([make_story("A", dependencies=["Z"])], set())
        assert result.errors == ["Story A depends on Z, but Z is not in the epic"]

    def test_done_dependency_is_satisfied(self, make_story):
        result = validate_dependencies([make_story("A", dependencies=["Z"])], {"Z"})
        assert result.valid

    def test_cycle_reported_as_path(self, make_story):
        stories = [make_story("A", dependencies=["B"]), make_story("B", dependencies=["A"])]
        result = validate_dependencies(stories, set())
        assert result.errors == ["Circular dependency detected: A -> B -> A"]

    def test_reports_every_error(self, make_story):
        stories = [
            make_story("A", dependencies=["A"]),
            make_story("B", dependencies=["C"]),
            make_story("C", dependencies=["B", "Q"]),
        ]
        errors = validate_dependencies(stories, set()).errors
        assert "Story A depends on itself" in errors
        assert "Story C depends on Q, but Q is not in the epic" in errors
        assert "Circular dependency detected: B -> C -> B" in errors


class TestGroupIntoPhases:

    def test_diamond(self, make_story):
        stories = [
            make_story("D", dependencies=["B", "C"]),
            make_story("C", dependencies=["A"]),
            make_story("B", dependencies=["A"]),
            make_story("A"),
        ]
        assert ids(group_into_phases(stories, set())) == [["A"], ["B", "C"], ["D"]]

    def test_independent_stories_share_a_phase(self, make_story):
        stories = [make_story("A"), make_story("B", dependencies=["A"]), make_story("C", dependencies=["A"])]
        assert ids(group_into_phases(stories, set())) == [["A"], ["B", "C"]]

    def test_phase_ordered_by_priority_then_created(self, make_story):
        stories = [
            make_story("X", priority=5, created="2026-01-03T00:00:00"),
            make_story("Y", priority=1),
            make_story("Z", priority=5, created="2026-01-02T00:00:00"),
        ]
        assert ids(group_into_phases(stories, set())) == [["Y", "Z", "X"]]

    def test_pre_satisfied_dependencies(self, make_story):
        stories = [make_story("B", dependencies=["A"])]
        assert ids(group_into_phases(stories, {"A"})) == [["B"]]

    def test_cycle_raises(self, make_story):
        stories = [make_story("A", dependencies=["B"]), make_story("B", dependencies=["A"])]
        with pytest.raises(DependencyError, match="A, B"):
            group_into_phases(stories, set())

    def test_every_story_in_exactly_one_phase(self, make_story):
        stories = [make_story(f"S{i}", dependencies=[f"S{i - 1}"] if i else []) for i in range(6)]
        phases = group_into_phases(stories, set())
        flat = [s.id for phase in phases for s in phase]
        assert sorted(flat) == sorted(s.id for s in stories)
        assert len(phases) == 6
