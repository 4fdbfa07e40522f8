"""
Tests for the workflow coordinator.

Runs small graphs end to end: ordering, propagation, failure isolation,
partial runs, cancellation, repeatability and the SSE stream.
"""

import asyncio
import json
import time

import pytest

import sys
from pathlib import Path

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))

from agentflow.errors import CyclicGraphError, UnknownNodeError
from agentflow.models.execution import NodeStatus, RunState
from agentflow.models.graph import NodeCategory
from agentflow.services.sandbox import SKIPPED_LOG, InProcessSandbox, NodeExecutor, ProcessSandbox
from agentflow.services.workflow_executor import (
    CANCELLED_ERROR,
    WorkflowCoordinator,
    execute_workflow,
    execute_workflow_streaming,
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

FETCH_CODE = "return {'items': [1, 2, 3]}"
FILTER_CODE = "return [i for i in context.inputs['Fetch']['items'] if i > 1]"


def trigger_fetch_filter(make_node, make_graph):
    return make_graph(
        [
            make_node("trigger", name="Trigger", category=NodeCategory.EVENT),
            make_node("fetch", FETCH_CODE, name="Fetch", category=NodeCategory.DATA_SCRAPPER),
            make_node("filter", FILTER_CODE, name="Filter"),
        ],
        [("trigger", "fetch"), ("fetch", "filter")],
    )


def chain(make_node, make_graph, codes: list[str]):
    """n1 -> n2 -> ... with the given code per node."""
    nodes = [make_node(f"n{i}", code) for i, code in enumerate(codes, start=1)]
    edges = [(f"n{i}", f"n{i + 1}") for i in range(1, len(codes))]
    return make_graph(nodes, edges)


class EventRecorder:
    def __init__(self):
        self.events: list[dict] = []

    def __call__(self, event):
        self.events.append(event)

    def names(self) -> list[str]:
        return [e["event"] for e in self.events]


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestFullRun:
    """Tests for run_full on successful graphs."""

    @pytest.mark.asyncio
    async def test_trigger_fetch_filter(self, make_node, make_graph, executor):
        coordinator = WorkflowCoordinator(trigger_fetch_filter(make_node, make_graph), executor)

        result = await coordinator.run_full()

        assert result.success is True
        assert result.cancelled is False
        assert result.mode == "full"
        assert result.execution_order == ["trigger", "fetch", "filter"]
        assert [r.node_id for r in result.node_results] == ["trigger", "fetch", "filter"]
        assert result.results["trigger"].result == {}
        assert result.results["trigger"].logs == ["event node processed"]
        assert result.results["fetch"].result == {"items": [1, 2, 3]}
        assert result.results["filter"].result == [2, 3]
        assert coordinator.statuses == {
            "trigger": NodeStatus.SUCCESS,
            "fetch": NodeStatus.SUCCESS,
            "filter": NodeStatus.SUCCESS,
        }

    @pytest.mark.asyncio
    async def test_trigger_fetch_filter_isolated(self, make_node, make_graph):
        """Same graph with every logic node in its own process."""
        executor = NodeExecutor(ProcessSandbox("spawn"), timeout_ms=10_000)

        result = await execute_workflow(
            trigger_fetch_filter(make_node, make_graph), executor=executor
        )

        assert result.success is True
        assert result.results["filter"].result == [2, 3]

    @pytest.mark.asyncio
    async def test_output_becomes_input_by_component_name(self, make_node, make_graph, executor):
        graph = make_graph(
            [make_node("a", "return {'x': 1}", name="Source"), make_node("b", "return context.inputs")],
            [("a", "b")],
        )

        result = await execute_workflow(graph, executor=executor)

        assert result.results["b"].result == {"Source": {"x": 1}}

    @pytest.mark.asyncio
    async def test_passthrough_forwards_its_inputs(self, make_node, make_graph, executor):
        graph = make_graph(
            [
                make_node("a", "return 5", name="Score"),
                make_node("mail", name="Mail", category=NodeCategory.COMMUNICATION),
                make_node("c", "return context.inputs['Mail']['Score'] + 1"),
            ],
            [("a", "mail"), ("mail", "c")],
        )

        result = await execute_workflow(graph, executor=executor)

        assert result.results["mail"].result == {"Score": 5}
        assert result.results["mail"].logs == ["communication node processed"]
        assert result.results["c"].result == 6

    @pytest.mark.asyncio
    async def test_node_cannot_mutate_upstream_result(self, make_node, make_graph, executor):
        """A -> B and A -> C: B mutating its inputs changes neither A's result nor C's view."""
        graph = make_graph(
            [
                make_node("a", "return {'items': [1]}", name="A"),
                make_node("b", "context.inputs['A']['items'].append(99)\nreturn context.inputs['A']", name="B"),
                make_node("c", "return context.inputs['A']['items']", name="C"),
            ],
            [("a", "b"), ("a", "c")],
        )

        result = await execute_workflow(graph, executor=executor)

        assert result.results["a"].result == {"items": [1]}
        assert result.results["b"].result == {"items": [1, 99]}
        assert result.results["c"].result == [1]

    @pytest.mark.asyncio
    async def test_blank_code_node_is_skipped(self, make_node, make_graph, executor):
        graph = make_graph([make_node("a", "   ")])

        result = await execute_workflow(graph, executor=executor)

        assert result.success is True
        assert result.results["a"].logs == [SKIPPED_LOG]
        assert result.results["a"].duration_ms == 0

    @pytest.mark.asyncio
    async def test_passthrough_delay(self, make_node, make_graph, executor):
        graph = make_graph([make_node("t", category=NodeCategory.EVENT)])

        started = time.perf_counter()
        result = await execute_workflow(graph, executor=executor, passthrough_delay_ms=50)

        assert time.perf_counter() - started >= 0.05
        assert result.results["t"].duration_ms == 0

    @pytest.mark.asyncio
    async def test_event_sequence(self, make_node, make_graph, executor):
        recorder = EventRecorder()
        graph = chain(make_node, make_graph, ["return 1", "raise RuntimeError('x')"])

        await execute_workflow(graph, executor=executor, event_sink=recorder)

        assert recorder.names() == [
            "workflow_start",
            "node_start",
            "node_complete",
            "node_start",
            "node_error",
            "workflow_complete",
        ]
        assert recorder.events[0]["execution_order"] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_async_event_sink(self, make_node, make_graph, executor):
        seen = []

        async def sink(event):
            await asyncio.sleep(0)
            seen.append(event["event"])

        await execute_workflow(chain(make_node, make_graph, ["return 1"]), executor=executor, event_sink=sink)

        assert seen[0] == "workflow_start"
        assert seen[-1] == "workflow_complete"

    @pytest.mark.asyncio
    async def test_status_is_running_while_node_executes(self, make_node, make_graph, executor):
        observed = {}
        coordinator = None

        def sink(event):
            if event["event"] == "node_start":
                observed[event["node_id"]] = coordinator.statuses[event["node_id"]]

        coordinator = WorkflowCoordinator(
            chain(make_node, make_graph, ["return 1", "return 2"]), executor, event_sink=sink
        )
        await coordinator.run_full()

        assert observed == {"n1": NodeStatus.RUNNING, "n2": NodeStatus.RUNNING}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestNodeFailures:
    """A failing node is recorded and the run carries on."""

    @pytest.mark.asyncio
    async def test_error_does_not_stop_downstream(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, ["raise ValueError('bad')", "return context.inputs"])

        result = await execute_workflow(graph, executor=executor)

        assert result.success is False
        assert result.results["n1"].error == "ValueError: bad"
        assert result.results["n2"].success is True
        assert result.results["n2"].result == {"n1": None}

    @pytest.mark.asyncio
    async def test_timeout_does_not_stop_downstream(self, make_node, make_graph):
        executor = NodeExecutor(InProcessSandbox(), timeout_ms=200)
        graph = chain(make_node, make_graph, ["import asyncio\nawait asyncio.sleep(30)", "return 'after'"])
        coordinator = WorkflowCoordinator(graph, executor)

        result = await coordinator.run_full()

        assert result.results["n1"].error == "Execution timed out after 0.2s"
        assert result.results["n2"].result == "after"
        assert coordinator.statuses == {"n1": NodeStatus.ERROR, "n2": NodeStatus.SUCCESS}

    @pytest.mark.asyncio
    async def test_cycle_raises_before_any_status(self, make_node, make_graph, executor):
        graph = make_graph(
            [make_node("a", "return 1"), make_node("b", "return 2")],
            [("a", "b"), ("b", "a")],
        )
        recorder = EventRecorder()
        coordinator = WorkflowCoordinator(graph, executor, event_sink=recorder)

        with pytest.raises(CyclicGraphError):
            await coordinator.run_full()

        assert coordinator.current_run is None
        assert coordinator.statuses == {}
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_node_error(self, make_node, make_graph):
        class BrokenExecutor(NodeExecutor):
            async def execute(self, code, context, timeout_ms=None):
                raise RuntimeError("executor broke")

        graph = chain(make_node, make_graph, ["return 1", "return 2"])

        result = await execute_workflow(graph, executor=BrokenExecutor(InProcessSandbox(), timeout_ms=100))

        assert result.success is False
        assert [r.error for r in result.node_results] == [
            "RuntimeError: executor broke",
            "RuntimeError: executor broke",
        ]


# ---------------------------------------------------------------------------
# Partial runs
# ---------------------------------------------------------------------------


class TestPartialRun:

    @pytest.mark.asyncio
    async def test_run_from_middle(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, ["return 'a'", "return len(context.inputs)", "return context.inputs"])
        coordinator = WorkflowCoordinator(graph, executor)

        result = await coordinator.run_from("n2")

        assert result.mode == "partial"
        assert result.execution_order == ["n2", "n3"]
        assert "n1" not in result.results
        # n1 did not run, so n2 sees no inputs
        assert result.results["n2"].result == 0
        assert result.results["n3"].result == {"n2": 0}
        assert "n1" not in coordinator.statuses

    @pytest.mark.asyncio
    async def test_run_from_last_node(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, ["return 1", "return 2"])

        result = await execute_workflow(graph, start_node_id="n2", executor=executor)

        assert result.execution_order == ["n2"]

    @pytest.mark.asyncio
    async def test_unknown_start_node(self, make_node, make_graph, executor):
        coordinator = WorkflowCoordinator(chain(make_node, make_graph, ["return 1"]), executor)

        with pytest.raises(UnknownNodeError):
            await coordinator.run_from("missing")

        assert coordinator.current_run is None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:

    SLOW = "import asyncio\nawait asyncio.sleep(0.3)\nreturn 'slow'"

    @pytest.mark.asyncio
    async def test_cancel_during_node(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, ["return 1", self.SLOW, "return 3", "return 4", "return 5"])
        recorder = EventRecorder()
        coordinator = None

        def sink(event):
            recorder(event)
            if event["event"] == "node_start" and event["node_id"] == "n2":
                coordinator.cancel()

        coordinator = WorkflowCoordinator(graph, executor, event_sink=sink)
        result = await coordinator.run_full()

        assert result.cancelled is True
        assert result.success is False
        assert result.results["n1"].success is True
        assert result.results["n2"].success is False
        assert result.results["n2"].error == CANCELLED_ERROR
        assert set(result.results) == {"n1", "n2"}
        assert coordinator.statuses == {
            "n1": NodeStatus.SUCCESS,
            "n2": NodeStatus.ERROR,
            "n3": NodeStatus.CANCELLED,
            "n4": NodeStatus.CANCELLED,
            "n5": NodeStatus.CANCELLED,
        }

        started = [e["node_id"] for e in recorder.events if e["event"] == "node_start"]
        assert started == ["n1", "n2"]
        assert recorder.names()[-1] == "workflow_cancelled"

    @pytest.mark.asyncio
    async def test_cancel_from_another_task(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, ["return 1", self.SLOW, "return 3"])
        coordinator = WorkflowCoordinator(graph, executor)

        task = asyncio.create_task(coordinator.run_full())
        for _ in range(200):
            if coordinator.statuses.get("n2") == NodeStatus.RUNNING:
                break
            await asyncio.sleep(0.01)

        assert coordinator.current_run.state is RunState.RUNNING
        coordinator.cancel()
        assert coordinator.current_run.cancelling is True

        result = await task

        assert result.cancelled is True
        assert coordinator.statuses["n3"] == NodeStatus.CANCELLED
        assert coordinator.current_run.state is RunState.DONE
        assert coordinator.current_run.cancelling is False

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, make_node, make_graph, executor):
        coordinator = WorkflowCoordinator(chain(make_node, make_graph, ["return 1", "return 2"]), executor)

        coordinator.cancel()
        result = await coordinator.run_full()

        assert result.success is True
        assert result.cancelled is False

    @pytest.mark.asyncio
    async def test_cancel_does_not_leak_into_next_run(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, [self.SLOW, "return 2"])
        coordinator = None

        def sink(event):
            if event["event"] == "node_start" and event["node_id"] == "n1":
                coordinator.cancel()

        coordinator = WorkflowCoordinator(graph, executor, event_sink=sink)
        first = await coordinator.run_full()

        coordinator.event_sink = None
        second = await coordinator.run_full()

        assert first.cancelled is True
        assert second.cancelled is False
        assert second.success is True


# ---------------------------------------------------------------------------
# Repeatability
# ---------------------------------------------------------------------------


class TestRepeatability:

    @pytest.mark.asyncio
    async def test_same_graph_twice(self, make_node, make_graph, executor):
        coordinator = WorkflowCoordinator(trigger_fetch_filter(make_node, make_graph), executor)

        first = await coordinator.run_full()
        second = await coordinator.run_full()

        assert first.run_id != second.run_id
        assert first.execution_order == second.execution_order
        assert {k: v.result for k, v in first.results.items()} == {
            k: v.result for k, v in second.results.items()
        }

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_independent(self, make_node, make_graph, executor):
        graph = chain(make_node, make_graph, ["import asyncio\nawait asyncio.sleep(0.05)\nreturn context.node_id", "return context.inputs"])
        coordinator = WorkflowCoordinator(graph, executor)

        first, second = await asyncio.gather(coordinator.run_full(), coordinator.run_full())

        assert first.run_id != second.run_id
        assert first.results["n2"].result == {"n1": "n1"}
        assert second.results["n2"].result == {"n1": "n1"}
        assert coordinator.running is False


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def parse_sse(lines: list[str]) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in lines]


class TestStreaming:

    @pytest.mark.asyncio
    async def test_stream_events(self, make_node, make_graph, executor):
        lines = [
            line async for line in execute_workflow_streaming(
                trigger_fetch_filter(make_node, make_graph), executor=executor
            )
        ]

        assert all(line.startswith("data: ") and line.endswith("\n\n") for line in lines)
        events = parse_sse(lines)
        assert events[0]["event"] == "workflow_start"
        assert events[-1]["event"] == "workflow_complete"
        assert events[-1]["success"] is True
        completed = [e for e in events if e["event"] == "node_complete"]
        assert [e["node_id"] for e in completed] == ["trigger", "fetch", "filter"]
        assert completed[-1]["result"] == [2, 3]

    @pytest.mark.asyncio
    async def test_stream_reports_cycle(self, make_node, make_graph, executor):
        graph = make_graph([make_node("a"), make_node("b")], [("a", "b"), ("b", "a")])

        events = parse_sse([line async for line in execute_workflow_streaming(graph, executor=executor)])

        assert len(events) == 1
        assert events[0]["event"] == "workflow_error"
        assert "Cycle detected" in events[0]["error"]
