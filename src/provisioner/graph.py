"""Task dependency graph construction and validation.

The graph is built once per run from the declared tasks:

1. Deduplication by key (kind/name): identical declarations collapse into one
   node, conflicting ones are rejected.
2. Reference linking: stub references inside tasks are replaced by the
   canonical declared node, so values written back during rendering are seen
   by dependents.
3. Edge extraction from each task's dependencies().
4. Validation: dangling references and cycles are fatal configuration errors
   raised before any node executes.

After build() the graph is read-only; the scheduler only reads it.

EXAMPLE:
    net = Network(name="net-1")
    vm = Instance(name="vm-1", network=Opt.of(Network(name="net-1")))
    TaskGraph.build([vm, net]).topological_sort()
    # ["Network/net-1", "Instance/vm-1"]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .config import ConfigurationError
from .task import Task

logger = logging.getLogger(__name__)


class DependencyError(ConfigurationError):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class DanglingDependencyError(DependencyError):
    """Raised when a task references a task that was never declared."""

    def __init__(self, task_key: str, missing: str) -> None:
        self.task_key = task_key
        self.missing = missing
        super().__init__(f"{task_key} depends on {missing}, which is not declared")


class DuplicateTaskError(DependencyError):
    """Raised when the same key is declared twice with different fields."""

    pass


@dataclass
class TaskNode:
    """A node in the task graph."""

    task: Task
    depends_on: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.task.key


@dataclass
class TaskGraph:
    """Directed acyclic graph of tasks. Edges point from a task to its dependencies."""

    nodes: dict[str, TaskNode] = field(default_factory=dict)

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> TaskGraph:
        """Build and validate the graph for a set of declared tasks.

        Raises:
            DuplicateTaskError: If a key is declared twice with different fields.
            DanglingDependencyError: If a referenced task is not declared.
            CyclicDependencyError: If the dependencies contain a cycle.
        """
        graph = cls()
        for task in tasks:
            graph.add(task)

        for node in graph.nodes.values():
            node.task.link(lambda ref, owner=node.key: graph._canonical(owner, ref))

        for node in graph.nodes.values():
            deps: list[str] = []
            for dep in node.task.dependencies():
                if dep.key == node.key:
                    raise CyclicDependencyError([node.key, node.key])
                if dep.key not in graph.nodes:
                    raise DanglingDependencyError(node.key, dep.key)
                if dep.key not in deps:
                    deps.append(dep.key)
            node.depends_on = deps

        for node in graph.nodes.values():
            for dep in node.depends_on:
                graph.nodes[dep].dependents.append(node.key)

        graph.validate()
        logger.debug(
            "Task graph built",
            extra={
                "node_count": len(graph.nodes),
                "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
            },
        )
        return graph

    def add(self, task: Task) -> None:
        """Add a declared task, collapsing identical duplicates.

        Raises:
            DuplicateTaskError: If the key exists with different fields.
        """
        existing = self.nodes.get(task.key)
        if existing is None:
            self.nodes[task.key] = TaskNode(task=task)
            return
        if existing.task is task or existing.task == task:
            logger.debug("Collapsed duplicate declaration", extra={"task": task.key})
            return
        raise DuplicateTaskError(f"{task.key} is declared twice with different fields")

    def _canonical(self, owner: str, ref: Task) -> Task:
        node = self.nodes.get(ref.key)
        if node is None:
            raise DanglingDependencyError(owner, ref.key)
        return node.task

    def get(self, key: str) -> Task:
        return self.nodes[key].task

    def tasks(self) -> list[Task]:
        return [node.task for node in self.nodes.values()]

    def dependencies(self, key: str) -> list[str]:
        return list(self.nodes[key].depends_on)

    def dependents(self, key: str) -> list[str]:
        return list(self.nodes[key].dependents)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Kahn's algorithm for topological sort / cycle detection
        in_degree: dict[str, int] = {key: len(node.depends_on) for key, node in self.nodes.items()}
        queue = [key for key, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1
            for dependent in self.nodes[current].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            remaining = {key for key, degree in in_degree.items() if degree > 0}
            raise CyclicDependencyError(self._find_cycle(remaining))

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Return one concrete cycle among nodes left over by Kahn's algorithm.

        Every leftover node either sits on a cycle or depends on one, so
        following unprocessed dependencies always closes a loop.
        """
        start = min(candidates)
        path: list[str] = []
        index: dict[str, int] = {}
        current = start
        while current not in index:
            index[current] = len(path)
            path.append(current)
            current = min(dep for dep in self.nodes[current].depends_on if dep in candidates)
        cycle = path[index[current]:]
        cycle.append(current)
        return cycle

    def topological_sort(self) -> list[str]:
        """Return task keys in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        in_degree: dict[str, int] = {key: len(node.depends_on) for key, node in self.nodes.items()}
        result: list[str] = []
        queue = [key for key, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in self.nodes[current].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def seal(self) -> None:
        """Freeze every task for the duration of the run."""
        for node in self.nodes.values():
            node.task.seal()
