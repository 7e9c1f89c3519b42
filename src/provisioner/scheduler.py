"""Event-driven topological executor.

A node becomes eligible the moment its last dependency completes
successfully; there is no batching by depth. Independent subtrees run
concurrently, bounded by a semaphore.

Shared mutable state (remaining dependency counts, results) is only touched
while holding a single asyncio.Lock, at node completion. The graph itself is
read-only during the run.

FAILURE SCOPING:
When a node fails, every transitive dependent is marked SKIPPED with
blocked_by naming the failed node. Independent branches keep running. The
run never aborts on the first error; the report lists every outcome.

CANCELLATION:
Once the cancel event is set, nodes that have not started yet are marked
CANCELLED. Nodes already executing finish their in-flight backend calls.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from .backend import TransientBackendError
from .context import RunCancelledError
from .graph import TaskGraph
from .task import Task

logger = logging.getLogger(__name__)


class NodeStatus(str, Enum):
    """Per-node outcome of a run."""

    NO_CHANGES = "applied-no-changes"
    CHANGED = "applied-with-changes"
    CREATED = "created"
    FAILED = "failed"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    CANCELLED = "cancelled"

    @property
    def succeeded(self) -> bool:
        """Whether dependents may proceed after this outcome."""
        return self in _SUCCESS_STATUSES


_SUCCESS_STATUSES = frozenset(
    {NodeStatus.NO_CHANGES, NodeStatus.CHANGED, NodeStatus.CREATED, NodeStatus.IGNORED}
)


@dataclass
class NodeResult:
    """Outcome of one node."""

    key: str
    status: NodeStatus
    reason: str | None = None
    error_type: str | None = None
    blocked_by: str | None = None
    changed_fields: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status.succeeded

    def describe(self) -> str:
        match self.status:
            case NodeStatus.FAILED:
                return f"failed: {self.reason}"
            case NodeStatus.SKIPPED:
                return f"skipped: blocked-by {self.blocked_by}"
            case NodeStatus.CHANGED:
                return f"applied-with-changes: {', '.join(self.changed_fields)}"
            case _:
                return self.status.value


@dataclass
class RunReport:
    """Union of every node outcome of a run, plus the completion order."""

    results: dict[str, NodeResult] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def _keys(self, *statuses: NodeStatus) -> list[str]:
        return [key for key in self.order if self.results[key].status in statuses]

    @property
    def succeeded(self) -> list[str]:
        return [key for key in self.order if self.results[key].succeeded]

    @property
    def failed(self) -> list[str]:
        return self._keys(NodeStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._keys(NodeStatus.SKIPPED)

    @property
    def cancelled(self) -> list[str]:
        return self._keys(NodeStatus.CANCELLED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped and not self.cancelled

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in NodeStatus}
        for result in self.results.values():
            counts[result.status.value] += 1
        return counts

    def describe(self) -> list[str]:
        """One line per node, sorted by key."""
        return [f"{key}: {self.results[key].describe()}" for key in sorted(self.results)]


# Runs one node to completion (discovery, delta, render) and reports its outcome
NodeExecutor = Callable[[Task], Awaitable[NodeResult]]


class Scheduler:
    """Runs a validated TaskGraph in dependency order."""

    def __init__(
        self,
        graph: TaskGraph,
        max_concurrency: int,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._graph = graph
        self._max_concurrency = max_concurrency
        self._cancel_event = cancel_event or asyncio.Event()

    async def run(self, execute: NodeExecutor) -> RunReport:
        """Execute every node, each strictly after its dependencies succeeded.

        Args:
            execute: Coroutine function running one node. Exceptions it raises
                mark the node FAILED; RunCancelledError marks it CANCELLED.

        Returns:
            RunReport with one result per node.
        """
        report = RunReport()
        total = len(self._graph.nodes)
        if total == 0:
            return report

        remaining = {key: len(node.depends_on) for key, node in self._graph.nodes.items()}
        lock = asyncio.Lock()
        semaphore = asyncio.Semaphore(self._max_concurrency)
        finished = asyncio.Event()
        running: set[asyncio.Task[None]] = set()

        def launch(key: str) -> None:
            task = asyncio.create_task(run_node(key), name=f"node:{key}")
            running.add(task)
            task.add_done_callback(running.discard)

        async def run_node(key: str) -> None:
            async with semaphore:
                result = await self._execute_node(key, execute)
            await complete(result)

        async def complete(result: NodeResult) -> None:
            ready: list[str] = []
            async with lock:
                self._record(report, result)
                if result.succeeded:
                    for dependent in self._graph.dependents(result.key):
                        remaining[dependent] -= 1
                        # Already blocked by another failed dependency
                        if remaining[dependent] == 0 and dependent not in report.results:
                            ready.append(dependent)
                else:
                    self._block_dependents(report, result)
                if len(report.results) == total:
                    finished.set()
            for key in sorted(ready):
                launch(key)

        for key in sorted(k for k, count in remaining.items() if count == 0):
            launch(key)

        await finished.wait()
        return report

    async def _execute_node(self, key: str, execute: NodeExecutor) -> NodeResult:
        if self._cancel_event.is_set():
            return NodeResult(key=key, status=NodeStatus.CANCELLED, reason="run cancelled")

        task = self._graph.get(key)
        started = time.monotonic()
        try:
            result = await execute(task)
        except RunCancelledError as e:
            result = NodeResult(key=key, status=NodeStatus.CANCELLED, reason=str(e))
        except Exception as e:
            # Retrying is left to the backend client; a transient error still fails the node
            logger.error(
                "Node failed",
                extra={
                    "task": key,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "transient": isinstance(e, TransientBackendError),
                },
            )
            result = NodeResult(
                key=key,
                status=NodeStatus.FAILED,
                reason=str(e),
                error_type=type(e).__name__,
            )
        result.duration_seconds = time.monotonic() - started
        return result

    def _record(self, report: RunReport, result: NodeResult) -> None:
        report.results[result.key] = result
        report.order.append(result.key)

    def _block_dependents(self, report: RunReport, root: NodeResult) -> None:
        """Mark every transitive dependent of a failed or cancelled node."""
        blocked_by = root.blocked_by or root.key
        pending = list(self._graph.dependents(root.key))
        while pending:
            key = pending.pop(0)
            if key in report.results:
                continue
            if root.status is NodeStatus.CANCELLED:
                result = NodeResult(key=key, status=NodeStatus.CANCELLED, reason="run cancelled")
            else:
                result = NodeResult(key=key, status=NodeStatus.SKIPPED, blocked_by=blocked_by)
                logger.warning("Node skipped", extra={"task": key, "blocked_by": blocked_by})
            self._record(report, result)
            pending.extend(self._graph.dependents(key))
