"""
Planner — turn a step set into an ordered, validated ExecutionPlan.

Pure graph computation. No I/O, no subprocess.

Ordering is Kahn's algorithm with a priority queue keyed on
declaration index, so among the steps that are ready at any point the
one declared first always goes next. The same step set therefore
always yields the same plan.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from provisioner.core.engine.errors import (
    CyclicDependency,
    DuplicateStep,
    UnknownDependency,
)
from provisioner.core.models.step import Step


@dataclass
class ExecutionPlan:
    """A topologically sorted sequence of steps."""

    steps: list[Step] = field(default_factory=list)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.steps]

    def get(self, name: str) -> Step | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def dependents_of(self, name: str) -> list[str]:
        """Steps that hard-depend on ``name``, directly or transitively."""
        blocked: set[str] = {name}
        out: list[str] = []
        for step in self.steps:
            if any(dep in blocked for dep in step.depends_on):
                blocked.add(step.name)
                out.append(step.name)
        return out


def _validate(steps: list[Step]) -> dict[str, int]:
    """Check names and references. Returns name → declaration index."""
    index: dict[str, int] = {}
    for i, step in enumerate(steps):
        if step.name in index:
            raise DuplicateStep(step.name)
        index[step.name] = i

    for step in steps:
        for dep in step.ordering_deps:
            if dep not in index:
                raise UnknownDependency(step.name, dep)

    return index


def _find_cycle(steps: list[Step], remaining: set[str]) -> list[str]:
    """Return the members of one cycle among ``remaining`` steps.

    Every remaining node has at least one unprocessed predecessor, so
    walking predecessors from any of them must revisit a node.
    """
    by_name = {s.name: s for s in steps}
    start = next(s.name for s in steps if s.name in remaining)

    path: list[str] = []
    position: dict[str, int] = {}
    node = start
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = next(d for d in by_name[node].ordering_deps if d in remaining)

    cycle = path[position[node]:]
    cycle.reverse()  # dependency first, like the plan order
    return cycle


def build_plan(steps: Iterable[Step]) -> ExecutionPlan:
    """Build a deterministic execution plan.

    Args:
        steps: Steps in declaration order.

    Returns:
        ExecutionPlan in which every step appears exactly once and
        after all of its dependencies.

    Raises:
        DuplicateStep: Two steps share a name.
        UnknownDependency: A step references an undeclared name.
        CyclicDependency: The dependency relation has a cycle.
    """
    steps = list(steps)
    index = _validate(steps)

    in_degree: dict[str, int] = {s.name: len(s.ordering_deps) for s in steps}
    successors: dict[str, list[str]] = {s.name: [] for s in steps}
    for s in steps:
        for dep in s.ordering_deps:
            successors[dep].append(s.name)

    ready = [index[name] for name, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    ordered: list[Step] = []
    while ready:
        step = steps[heapq.heappop(ready)]
        ordered.append(step)
        for succ in successors[step.name]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, index[succ])

    if len(ordered) < len(steps):
        done = {s.name for s in ordered}
        remaining = {s.name for s in steps if s.name not in done}
        raise CyclicDependency(_find_cycle(steps, remaining))

    return ExecutionPlan(steps=ordered)
