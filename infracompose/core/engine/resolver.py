"""
Dependency resolver — orders stacks by their capability edges.

Stack A depends on stack B when A imports any capability B exports.
Ordering is Kahn's algorithm with ties broken by declaration order,
so the same composition always deploys the same way. Cycles are
reported with the stack names that form them.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence

from infracompose.core.errors import CyclicDependencyError, ValidationError
from infracompose.core.models.stack import Stack


def _index(stacks: Sequence[Stack]) -> dict[str, Stack]:
    by_name: dict[str, Stack] = {}
    for stack in stacks:
        if stack.name in by_name:
            raise ValidationError(f"Stack '{stack.name}' is declared twice")
        by_name[stack.name] = stack
    return by_name


def dependency_graph(stacks: Iterable[Stack]) -> dict[str, list[str]]:
    """Map each stack name to the stacks it imports from.

    Raises:
        ValidationError: Duplicate stack names, or an import of an
            unknown stack or an export the stack does not declare.
    """
    stacks = list(stacks)
    by_name = _index(stacks)

    graph: dict[str, list[str]] = {}
    for stack in stacks:
        for spec in stack.imports.values():
            source = by_name.get(spec.ref.stack)
            if source is None:
                raise ValidationError(
                    f"Stack '{stack.name}' imports '{spec.ref}' from unknown stack "
                    f"'{spec.ref.stack}'"
                )
            if spec.ref.export not in source.exports:
                raise ValidationError(
                    f"Stack '{stack.name}' imports '{spec.ref}' but stack "
                    f"'{source.name}' does not export '{spec.ref.export}'"
                )
        graph[stack.name] = stack.depends_on_stacks
    return graph


def order(stacks: Iterable[Stack]) -> list[Stack]:
    """Topologically order stacks so every stack follows its imports.

    Returns:
        Stacks in deployment order.

    Raises:
        CyclicDependencyError: The import graph has a cycle.
        ValidationError: See dependency_graph().
    """
    stacks = list(stacks)
    graph = dependency_graph(stacks)
    position = {stack.name: i for i, stack in enumerate(stacks)}

    in_degree = {name: len(deps) for name, deps in graph.items()}
    dependents: dict[str, list[str]] = {name: [] for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [position[name] for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: list[Stack] = []
    while ready:
        stack = stacks[heapq.heappop(ready)]
        ordered.append(stack)
        for successor in dependents[stack.name]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, position[successor])

    if len(ordered) < len(stacks):
        remaining = [s.name for s in stacks if in_degree[s.name] > 0]
        raise CyclicDependencyError(_find_cycle(graph, remaining))

    return ordered


def _find_cycle(graph: dict[str, list[str]], remaining: list[str]) -> list[str]:
    """Walk unresolved dependencies from the first blocked stack until one repeats.

    Every stack left over by Kahn's algorithm still waits on another
    left-over stack, so the walk always closes a loop.
    """
    blocked = set(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = remaining[0]
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = next(dep for dep in graph[current] if dep in blocked)
    return path[seen[current]:] + [current]


def upstream(stacks: Iterable[Stack], names: Iterable[str]) -> list[Stack]:
    """The named stacks plus everything they transitively import from.

    Returned in declaration order (not deployment order).
    """
    stacks = list(stacks)
    graph = dependency_graph(stacks)
    wanted = _closure(graph, _check_names(stacks, names))
    return [s for s in stacks if s.name in wanted]


def downstream(stacks: Iterable[Stack], names: Iterable[str]) -> list[Stack]:
    """The named stacks plus everything that transitively imports from them."""
    stacks = list(stacks)
    graph = dependency_graph(stacks)
    reverse: dict[str, list[str]] = {name: [] for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            reverse[dep].append(name)
    wanted = _closure(reverse, _check_names(stacks, names))
    return [s for s in stacks if s.name in wanted]


def _check_names(stacks: list[Stack], names: Iterable[str]) -> list[str]:
    known = {s.name for s in stacks}
    names = list(names)
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ValidationError(
            f"Unknown stack(s): {', '.join(unknown)}. Known: {', '.join(sorted(known))}"
        )
    return names


def _closure(edges: dict[str, list[str]], start: list[str]) -> set[str]:
    seen: set[str] = set()
    pending = list(start)
    while pending:
        name = pending.pop()
        if name in seen:
            continue
        seen.add(name)
        pending.extend(edges.get(name, []))
    return seen
