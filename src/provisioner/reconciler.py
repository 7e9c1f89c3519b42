"""Reconciliation run: one desired-state snapshot against one actual state.

A run goes through these stages:
1. Build the task graph (dedup, link references, reject dangling refs and cycles)
2. Pre-scan every task against the active target (unsupported = fatal)
3. Seal the tasks and schedule them in dependency order
4. Per node: lifecycle decision -> discovery -> delta -> lifecycle gate
   -> validation hook -> render dispatch
5. Commit target artifacts, only if no node failed or was cancelled

Steps 1 and 2 raise ConfigurationError before any node executes, so a bad
graph never causes a backend call.

LIFECYCLE GATE:
- Sync: create when missing, render when changes exist, otherwise no-op.
- Ignore: the node is not processed at all.
- ExistsAndValidates: missing resource or any change fails the node.
- ExistsAndWarnIfChanges: missing resource fails the node; changes are
  logged as drift and not applied.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

from .backend import BackendClient
from .config import Config
from .context import RunContext
from .delta import compute_changes
from .graph import TaskGraph
from .lifecycle import (
    Lifecycle,
    LifecycleResolver,
    LifecycleViolationError,
    create_lifecycle_resolver,
)
from .render import RenderDispatcher, RenderTarget
from .scheduler import NodeResult, NodeStatus, RunReport, Scheduler
from .task import Task
from .vfs import VFSContext

logger = logging.getLogger(__name__)


class Reconciler:
    """Runs the declared tasks against one target.

    A Reconciler instance is good for a single run: the run context (and its
    cancellation event) is created with it.
    """

    def __init__(
        self,
        config: Config,
        target: RenderTarget,
        backend: BackendClient | None = None,
        vfs: VFSContext | None = None,
        lifecycle_resolver: LifecycleResolver | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated configuration.
            target: Active render target for this run.
            backend: Backend client; required by targets that discover or mutate.
            vfs: Store context for ManagedFile tasks.
            lifecycle_resolver: Lifecycle overrides; defaults to config.lifecycle_overrides.

        Raises:
            ConfigurationError: If the lifecycle overrides cannot be parsed.
        """
        self._config = config
        self._target = target
        self._dispatcher = RenderDispatcher(target)
        self._lifecycle_resolver = lifecycle_resolver or create_lifecycle_resolver(
            config.lifecycle_overrides
        )
        self._ctx = RunContext(
            config=config,
            target=target,
            backend_client=backend,
            vfs=vfs or VFSContext(),
        )

    @property
    def ctx(self) -> RunContext:
        return self._ctx

    def cancel(self) -> None:
        """Stop starting new nodes. In-flight backend calls run to completion."""
        self._ctx.cancel()

    def build_graph(self, tasks: Iterable[Task]) -> TaskGraph:
        """Build the graph and check it against the target.

        Raises:
            ConfigurationError: Dangling reference, cycle, duplicate or
                unsupported target.
        """
        graph = TaskGraph.build(tasks)
        self._dispatcher.check_supported(graph.tasks())
        return graph

    async def run(self, tasks: Iterable[Task]) -> RunReport:
        """Reconcile the declared tasks.

        Returns:
            RunReport with one outcome per node.

        Raises:
            ConfigurationError: If the graph or target pre-scan is invalid.
        """
        graph = self.build_graph(tasks)
        graph.seal()
        self._ctx.graph = graph
        self._target.start(self._ctx)

        logger.info(
            "Starting run",
            extra={
                "project": self._config.project,
                "target": self._target.name,
                "task_count": len(graph.nodes),
                "max_concurrency": self._config.max_concurrency,
            },
        )

        started = time.monotonic()
        scheduler = Scheduler(graph, self._config.max_concurrency, self._ctx.cancel_event)
        report = await scheduler.run(self._execute)

        if report.success:
            self._target.finish()
        else:
            logger.warning(
                "Artifacts not committed",
                extra={"target": self._target.name, "failed": report.failed},
            )

        self._log_result(report, time.monotonic() - started)
        return report

    async def _execute(self, task: Task) -> NodeResult:
        """Run one node through discovery, delta, gate and render."""
        self._ctx.check_cancelled()

        decision = self._lifecycle_resolver.resolve(task)
        lifecycle = decision.lifecycle
        if lifecycle is Lifecycle.IGNORE:
            logger.debug("Task ignored", extra={"task": task.key, "reason": decision.reason})
            self._target.observe(task, None)
            return NodeResult(key=task.key, status=NodeStatus.IGNORED, reason=decision.reason)

        discovers = self._target.discovers or (
            lifecycle.requires_existing and self._ctx.backend_client is not None
        )
        actual: Task | None = None
        if discovers:
            actual = await task.find(self._ctx)
            if actual is None:
                logger.debug("Resource not found", extra={"task": task.key})

        changes = compute_changes(actual, task)

        if not lifecycle.may_mutate:
            self._target.observe(task, actual)
            return self._check_existing(task, lifecycle, discovers, actual, changes.field_names)

        if actual is not None and changes.is_empty:
            self._target.observe(task, actual)
            return NodeResult(key=task.key, status=NodeStatus.NO_CHANGES)

        task.check_changes(actual, changes)

        changed_fields = changes.field_names
        await self._dispatcher.dispatch(task, actual, changes)

        status = NodeStatus.CREATED if actual is None else NodeStatus.CHANGED
        logger.info(
            "Task applied",
            extra={"task": task.key, "status": status.value, "changed_fields": changed_fields},
        )
        return NodeResult(key=task.key, status=status, changed_fields=changed_fields)

    def _check_existing(
        self,
        task: Task,
        lifecycle: Lifecycle,
        discovered: bool,
        actual: Task | None,
        changed_fields: list[str],
    ) -> NodeResult:
        """Lifecycle gate for tasks that must already exist. Never mutates."""
        if not discovered:
            return NodeResult(
                key=task.key,
                status=NodeStatus.NO_CHANGES,
                reason=f"{lifecycle.value} not checked: target {self._target.name} does not discover",
            )

        if actual is None:
            raise LifecycleViolationError(
                f"{task.key} does not exist but its lifecycle is {lifecycle.value}"
            )

        if changed_fields:
            if lifecycle is Lifecycle.EXISTS_AND_VALIDATES:
                raise LifecycleViolationError(
                    f"{task.key} does not match the declaration: {', '.join(changed_fields)}"
                )
            logger.warning(
                "Drift detected, not applying",
                extra={
                    "task": task.key,
                    "lifecycle": lifecycle.value,
                    "changed_fields": changed_fields,
                },
            )

        return NodeResult(
            key=task.key,
            status=NodeStatus.NO_CHANGES,
            changed_fields=changed_fields,
        )

    def _log_result(self, report: RunReport, duration_seconds: float) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "target": self._target.name,
            "duration_seconds": round(duration_seconds, 3),
            "summary": report.summary(),
        }

        if report.failed:
            extra["failed"] = report.failed
            extra["skipped"] = report.skipped
            logger.error("Run finished with failures", extra=extra)
        elif report.cancelled:
            extra["cancelled"] = report.cancelled
            logger.warning("Run cancelled", extra=extra)
        else:
            logger.info("Run result", extra=extra)


async def reconcile(
    config: Config,
    target: RenderTarget,
    tasks: Iterable[Task],
    backend: BackendClient | None = None,
    vfs: VFSContext | None = None,
) -> RunReport:
    """Convenience wrapper for a single run."""
    return await Reconciler(config, target, backend=backend, vfs=vfs).run(tasks)


