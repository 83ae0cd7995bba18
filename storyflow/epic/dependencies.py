"""
Dependency validation and phase grouping for epic runs.

Stories in an epic may depend on each other. Before anything runs, the
graph is validated (no self-edges, no unknown ids, no cycles), then leveled
into phases: phase 0 holds stories whose dependencies are all already done,
phase k holds stories whose dependencies are done or sit in phases < k.
"""

from dataclasses import dataclass, field

from storyflow.pm.models import Story

# DFS colors
_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyError(Exception):
    """Dependency graph cannot be leveled into phases."""
    pass


@dataclass
class DependencyValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _sort_key(story: Story) -> tuple:
    return (story.priority, story.created, story.id)


def _find_cycles(graph: dict[str, list[str]]) -> list[list[str]]:
    """Every cycle reachable in the graph, as closed paths (first == last).

    Iterative DFS so deep chains don't hit the recursion limit. Each back
    edge yields one cycle; nodes are visited in sorted order so reports
    are deterministic.
    """
    color = {node: _WHITE for node in graph}
    cycles = []

    for start in sorted(graph):
        if color[start] != _WHITE:
            continue

        path = [start]
        color[start] = _GREY
        stack = [iter(sorted(graph[start]))]

        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = _BLACK
                continue
            if child not in graph:
                continue
            if color[child] == _GREY:
                cycles.append(path[path.index(child):] + [child])
            elif color[child] == _WHITE:
                color[child] = _GREY
                path.append(child)
                stack.append(iter(sorted(graph[child])))

    return cycles


def validate_dependencies(stories: list[Story], pre_satisfied: set[str]) -> DependencyValidation:
    """Check that every dependency resolves and the graph is acyclic.

    Args:
        stories: Stories that will run
        pre_satisfied: Ids already done; depending on them is always fine

    Returns:
        DependencyValidation listing every offending edge and cycle
    """
    errors = []
    ids = {s.id for s in stories}
    graph: dict[str, list[str]] = {}

    for story in sorted(stories, key=lambda s: s.id):
        edges = []
        for dep in story.dependencies:
            if dep == story.id:
                errors.append(f"Story {story.id} depends on itself")
            elif dep in pre_satisfied:
                continue
            elif dep not in ids:
                errors.append(f"Story {story.id} depends on {dep}, but {dep} is not in the epic")
            else:
                edges.append(dep)
        graph[story.id] = edges

    for cycle in _find_cycles(graph):
        errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

    return DependencyValidation(valid=not errors, errors=errors)


def group_into_phases(stories: list[Story], pre_satisfied: set[str]) -> list[list[Story]]:
    """Kahn-style leveling. Within a phase, order by (priority, created).

    Raises:
        DependencyError: if some stories can never become ready (validate first)
    """
    satisfied = set(pre_satisfied)
    remaining = sorted(stories, key=_sort_key)
    phases = []

    while remaining:
        ready = [s for s in remaining if all(dep in satisfied for dep in s.dependencies)]
        if not ready:
            stuck = ", ".join(s.id for s in remaining)
            raise DependencyError(f"Unresolvable dependencies among: {stuck}")

        phases.append(ready)
        satisfied.update(s.id for s in ready)
        ready_ids = {s.id for s in ready}
        remaining = [s for s in remaining if s.id not in ready_ids]

    return phases
