"""Tests for the event-driven scheduler."""

from __future__ import annotations

import asyncio

import pytest

from provisioner.context import RunCancelledError
from provisioner.graph import TaskGraph
from provisioner.scheduler import NodeResult, NodeStatus, RunReport, Scheduler
from provisioner.task import Task

from test_graph import step


def ok(status: NodeStatus = NodeStatus.CREATED):
    async def execute(task: Task) -> NodeResult:
        return NodeResult(key=task.key, status=status)

    return execute


class TestNodeStatus:
    """Tests for NodeStatus."""

    def test_values(self) -> None:
        assert NodeStatus.NO_CHANGES.value == "applied-no-changes"
        assert NodeStatus.CHANGED.value == "applied-with-changes"
        assert NodeStatus.SKIPPED.value == "skipped"

    def test_ignored_lets_dependents_proceed(self) -> None:
        assert NodeStatus.IGNORED.succeeded
        assert not NodeStatus.FAILED.succeeded
        assert not NodeStatus.CANCELLED.succeeded


class TestNodeResult:
    """Tests for NodeResult.describe()."""

    def test_describe(self) -> None:
        assert NodeResult("a", NodeStatus.FAILED, reason="boom").describe() == "failed: boom"
        assert (
            NodeResult("a", NodeStatus.SKIPPED, blocked_by="Step/x").describe()
            == "skipped: blocked-by Step/x"
        )
        assert (
            NodeResult("a", NodeStatus.CHANGED, changed_fields=["labels", "size_gb"]).describe()
            == "applied-with-changes: labels, size_gb"
        )
        assert NodeResult("a", NodeStatus.CREATED).describe() == "created"


class TestScheduler:
    """Tests for Scheduler.run()."""

    @pytest.mark.asyncio
    async def test_dependencies_complete_first(self) -> None:
        """Test that a node starts only after its dependencies finished."""
        graph = TaskGraph.build([step("a"), step("b", "a"), step("c", "b"), step("d", "a")])
        started: list[str] = []

        async def execute(task: Task) -> NodeResult:
            started.append(task.key)
            await asyncio.sleep(0)
            return NodeResult(key=task.key, status=NodeStatus.CREATED)

        report = await Scheduler(graph, max_concurrency=4).run(execute)

        assert report.success
        assert started.index("Step/a") < started.index("Step/b") < started.index("Step/c")
        assert started.index("Step/a") < started.index("Step/d")
        assert report.order.index("Step/b") < report.order.index("Step/c")

    @pytest.mark.asyncio
    async def test_no_batching_by_depth(self) -> None:
        """Test a node runs as soon as its own dependency is done, not the whole level."""
        graph = TaskGraph.build([step("fast"), step("slow"), step("after-fast", "fast")])
        release_slow = asyncio.Event()
        order: list[str] = []

        async def execute(task: Task) -> NodeResult:
            if task.name == "slow":
                await release_slow.wait()
            order.append(task.key)
            if task.name == "after-fast":
                release_slow.set()
            return NodeResult(key=task.key, status=NodeStatus.CREATED)

        report = await Scheduler(graph, max_concurrency=4).run(execute)

        assert report.success
        assert order == ["Step/fast", "Step/after-fast", "Step/slow"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        """Test that at most max_concurrency nodes execute at once."""
        graph = TaskGraph.build([step(f"n{i}") for i in range(6)])
        active = 0
        peak = 0

        async def execute(task: Task) -> NodeResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return NodeResult(key=task.key, status=NodeStatus.CREATED)

        await Scheduler(graph, max_concurrency=2).run(execute)

        assert peak == 2

    @pytest.mark.asyncio
    async def test_failure_skips_transitive_dependents_only(self) -> None:
        """Test failure scoping: dependents skipped, independent branch continues."""
        graph = TaskGraph.build(
            [step("a"), step("b", "a"), step("c", "b"), step("x"), step("y", "x")]
        )

        async def execute(task: Task) -> NodeResult:
            if task.name == "a":
                raise RuntimeError("quota exceeded")
            return NodeResult(key=task.key, status=NodeStatus.CREATED)

        report = await Scheduler(graph, max_concurrency=2).run(execute)

        assert report.failed == ["Step/a"]
        assert report.results["Step/a"].error_type == "RuntimeError"
        assert report.results["Step/a"].reason == "quota exceeded"
        assert sorted(report.skipped) == ["Step/b", "Step/c"]
        assert report.results["Step/c"].blocked_by == "Step/a"
        assert report.results["Step/y"].status is NodeStatus.CREATED
        assert not report.success

    @pytest.mark.asyncio
    async def test_node_with_two_dependencies_runs_once(self) -> None:
        """Test a node blocked by one failed dependency is not launched by the other."""
        graph = TaskGraph.build([step("bad"), step("good"), step("join", "bad", "good")])
        executed: list[str] = []

        async def execute(task: Task) -> NodeResult:
            executed.append(task.key)
            if task.name == "bad":
                raise RuntimeError("boom")
            await asyncio.sleep(0.01)
            return NodeResult(key=task.key, status=NodeStatus.CREATED)

        report = await Scheduler(graph, max_concurrency=4).run(execute)

        assert "Step/join" not in executed
        assert report.results["Step/join"].status is NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_ignored_node_unblocks_dependents(self) -> None:
        """Test that IGNORED counts as success for dependents."""
        graph = TaskGraph.build([step("a"), step("b", "a")])

        async def execute(task: Task) -> NodeResult:
            status = NodeStatus.IGNORED if task.name == "a" else NodeStatus.NO_CHANGES
            return NodeResult(key=task.key, status=status)

        report = await Scheduler(graph, max_concurrency=1).run(execute)

        assert report.success
        assert report.results["Step/b"].status is NodeStatus.NO_CHANGES

    @pytest.mark.asyncio
    async def test_cancellation_stops_new_nodes(self) -> None:
        """Test that nodes not yet started are cancelled once the event is set."""
        graph = TaskGraph.build([step("a"), step("b", "a"), step("c", "b")])
        cancel = asyncio.Event()

        async def execute(task: Task) -> NodeResult:
            if task.name == "a":
                cancel.set()
            return NodeResult(key=task.key, status=NodeStatus.CREATED)

        report = await Scheduler(graph, max_concurrency=1, cancel_event=cancel).run(execute)

        assert report.results["Step/a"].status is NodeStatus.CREATED
        assert report.cancelled == ["Step/b", "Step/c"]
        assert not report.success

    @pytest.mark.asyncio
    async def test_run_cancelled_error_marks_cancelled(self) -> None:
        """Test that RunCancelledError is not reported as a failure."""
        graph = TaskGraph.build([step("a"), step("b", "a")])

        async def execute(task: Task) -> NodeResult:
            raise RunCancelledError("run was cancelled")

        report = await Scheduler(graph, max_concurrency=1).run(execute)

        assert report.failed == []
        assert report.cancelled == ["Step/a", "Step/b"]

    @pytest.mark.asyncio
    async def test_empty_graph(self) -> None:
        report = await Scheduler(TaskGraph.build([]), max_concurrency=1).run(ok())

        assert report.success
        assert report.results == {}

    def test_invalid_concurrency(self) -> None:
        with pytest.raises(ValueError):
            Scheduler(TaskGraph.build([]), max_concurrency=0)


class TestRunReport:
    """Tests for RunReport."""

    def test_summary_and_describe(self) -> None:
        report = RunReport()
        for result in (
            NodeResult("Step/a", NodeStatus.CREATED),
            NodeResult("Step/b", NodeStatus.FAILED, reason="boom"),
            NodeResult("Step/c", NodeStatus.SKIPPED, blocked_by="Step/b"),
        ):
            report.results[result.key] = result
            report.order.append(result.key)

        summary = report.summary()
        assert summary["created"] == 1
        assert summary["failed"] == 1
        assert summary["skipped"] == 1
        assert report.describe() == [
            "Step/a: created",
            "Step/b: failed: boom",
            "Step/c: skipped: blocked-by Step/b",
        ]
