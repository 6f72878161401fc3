from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from taskwarden.errors import CycleError, GraphError, UnknownDependencyError
from taskwarden.models import Dependency, Task

logger = logging.getLogger(__name__)

ImplicitRule = Callable[[list[Task]], list[Dependency]]

IMPLEMENTATION_CATEGORIES = frozenset({"frontend", "backend"})
TASK_ID_PATTERN = re.compile(r"^T-(\d+)$")


@dataclass(slots=True)
class DependencyGraph:
    nodes: list[Task]
    edges: list[Dependency] = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    def task(self, task_id: str) -> Task | None:
        for node in self.nodes:
            if node.id == task_id:
                return node
        return None

    def dependents(self, task_id: str) -> list[str]:
        return [edge.to_id for edge in self.edges if edge.from_id == task_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.id for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "order": list(self.order),
        }


def testing_depends_on_implementation(tasks: list[Task]) -> list[Dependency]:
    """Testing tasks wait for every frontend/backend task of their requirement."""
    edges: list[Dependency] = []
    for task in tasks:
        if task.category != "testing":
            continue
        for candidate in tasks:
            if (
                candidate.requirement_id == task.requirement_id
                and candidate.category in IMPLEMENTATION_CATEGORIES
            ):
                edges.append(Dependency(candidate.id, task.id, implicit=True))
    return edges


def deployment_depends_on_everything(tasks: list[Task]) -> list[Dependency]:
    """Deployment tasks wait for every non-deployment task of their requirement."""
    edges: list[Dependency] = []
    for task in tasks:
        if task.category != "deployment":
            continue
        for candidate in tasks:
            if (
                candidate.requirement_id == task.requirement_id
                and candidate.category != "deployment"
            ):
                edges.append(Dependency(candidate.id, task.id, implicit=True))
    return edges


IMPLICIT_RULES: tuple[ImplicitRule, ...] = (
    testing_depends_on_implementation,
    deployment_depends_on_everything,
)


def topological_order(task_ids: list[str], edges: Iterable[Dependency]) -> list[str]:
    """Kahn's algorithm with declaration-order FIFO tie-breaking.

    Raises CycleError when some nodes can never reach in-degree zero; no partial
    order is returned in that case.
    """
    in_degree: dict[str, int] = {task_id: 0 for task_id in task_ids}
    adjacency: dict[str, list[str]] = {task_id: [] for task_id in task_ids}
    seen_edges: set[tuple[str, str]] = set()
    for edge in edges:
        key = (edge.from_id, edge.to_id)
        if key in seen_edges:
            continue
        seen_edges.add(key)
        if edge.from_id not in in_degree:
            raise UnknownDependencyError(edge.to_id, edge.from_id)
        if edge.to_id not in in_degree:
            raise UnknownDependencyError(edge.to_id, edge.to_id)
        adjacency[edge.from_id].append(edge.to_id)
        in_degree[edge.to_id] += 1

    queue: deque[str] = deque(task_id for task_id in task_ids if in_degree[task_id] == 0)
    order: list[str] = []
    while queue:
        task_id = queue.popleft()
        order.append(task_id)
        for neighbor in adjacency[task_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) < len(task_ids):
        ordered = set(order)
        cyclic = [task_id for task_id in task_ids if task_id not in ordered]
        raise CycleError(
            f"Dependency cycle detected among tasks: {', '.join(cyclic)}",
            task_ids=cyclic,
        )
    return order


def _validate_ids(tasks: list[Task]) -> None:
    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise GraphError(f"Duplicate task identifier: {task.id}")
        seen.add(task.id)
    for task in tasks:
        for dependency_id in task.depends_on:
            if dependency_id not in seen:
                raise UnknownDependencyError(task.id, dependency_id)
            if dependency_id == task.id:
                raise CycleError(f"Task {task.id} depends on itself", task_ids=[task.id])


def build_graph(
    tasks: list[Task],
    rules: Iterable[ImplicitRule] = IMPLICIT_RULES,
) -> DependencyGraph:
    """Validate tasks, merge implicit edges into them and compute the order.

    Implicit edges are merged into ``depends_on`` only after the full edge set
    has been ordered; a failed build leaves the task collection untouched.
    """
    _validate_ids(tasks)
    by_id = {task.id: task for task in tasks}

    edges: list[Dependency] = []
    seen: set[tuple[str, str]] = set()
    for task in tasks:
        for dependency_id in task.depends_on:
            key = (dependency_id, task.id)
            if key not in seen:
                seen.add(key)
                edges.append(Dependency(dependency_id, task.id))

    implicit: list[Dependency] = []
    for rule in rules:
        for edge in rule(tasks):
            key = (edge.from_id, edge.to_id)
            if key in seen:
                continue
            seen.add(key)
            implicit.append(edge)

    order = topological_order([task.id for task in tasks], [*edges, *implicit])

    for edge in implicit:
        by_id[edge.to_id].add_dependency(edge.from_id)
    if implicit:
        logger.debug("Merged %d implicit dependency edges", len(implicit))
    return DependencyGraph(nodes=list(tasks), edges=[*edges, *implicit], order=order)


def merge_tasks(existing: list[Task], incoming: list[Task]) -> tuple[list[Task], DependencyGraph]:
    """Merge a new batch of tasks into an accepted collection and rebuild the graph.

    Incoming tasks replace existing ones with the same identifier. The existing
    collection is left unchanged when the merged one fails to validate.
    """
    merged: dict[str, Task] = {task.id: task for task in existing}
    for task in incoming:
        merged[task.id] = task
    tasks = list(merged.values())
    graph = build_graph(tasks)
    return tasks, graph


def next_task_id(tasks: list[Task]) -> str:
    highest = 0
    for task in tasks:
        match = TASK_ID_PATTERN.match(task.id)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"T-{highest + 1:03d}"
