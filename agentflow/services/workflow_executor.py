"""
Workflow execution engine.

Takes a resolved WorkflowGraph, orders it topologically, and runs the nodes
one at a time: inputs are collected from upstream results, logic nodes go
through the sandboxed NodeExecutor, passthrough nodes hand their inputs on.

Key concepts:
- Each invocation gets its own ExecutionRun (statuses, results, cursor,
  cancellation token). Nothing about a run lives at module level.
- Node failures and timeouts are local: downstream nodes still run.
  Only a cyclic graph is fatal, and it is raised before any status changes.
- cancel() is cooperative. The node in flight finishes (or times out) and is
  recorded as failed; nodes after it never start and are marked cancelled.
- Progress is published through an optional event sink as it happens; the
  aggregate result is handed back when the run completes.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

from agentflow.config import get_settings
from agentflow.errors import UnknownNodeError, WorkflowError
from agentflow.models.execution import (
    ExecutionContext,
    NodeResult,
    NodeStatus,
    RunMode,
    RunSnapshot,
    RunState,
    WorkflowExecutionResult,
)
from agentflow.models.graph import NodeKind, ResolvedNode, WorkflowGraph
from agentflow.services.ordering import order_graph
from agentflow.services.propagation import passthrough_result, resolve_node_inputs
from agentflow.services.sandbox import NodeExecutor

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Execution cancelled"

EventSink = Callable[[dict[str, Any]], "Awaitable[None] | None"]


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class CancellationToken:
    """Per-run cancellation flag. Checked between node dispatches only."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ExecutionRun:
    def __init__(self, order: list[str], mode: RunMode, run_id: str | None = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.mode: RunMode = mode
        self.order = list(order)
        self.statuses: dict[str, NodeStatus] = {nid: NodeStatus.PENDING for nid in order}
        self.results: dict[str, NodeResult] = {}
        self.cursor = 0
        self.state = RunState.IDLE
        self.token = CancellationToken()
        self.aborted = False
        self.started_at: datetime | None = None
        self.completed_at: datetime | None = None
        self.result: WorkflowExecutionResult | None = None

    @property
    def cancelling(self) -> bool:
        return self.token.cancelled and self.state is RunState.RUNNING

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            mode=self.mode,
            state=self.state,
            cancelling=self.cancelling,
            execution_order=list(self.order),
            cursor=self.cursor,
            statuses=dict(self.statuses),
            results=dict(self.results),
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class WorkflowCoordinator:
    """
    Runs one graph, either whole (run_full) or from a given node (run_from).

    The same coordinator serves interactive runs (with a simulated delay on
    passthrough nodes so progress is visible) and task-triggered runs (no
    delay); only `passthrough_delay_ms` and `event_sink` differ.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        executor: NodeExecutor | None = None,
        *,
        passthrough_delay_ms: int | None = None,
        event_sink: EventSink | None = None,
    ):
        self.graph = graph
        self.executor = executor or NodeExecutor()
        if passthrough_delay_ms is None:
            passthrough_delay_ms = get_settings().passthrough_delay_ms
        self.passthrough_delay_ms = passthrough_delay_ms
        self.event_sink = event_sink
        self._current: ExecutionRun | None = None
        self._active: list[ExecutionRun] = []

    @property
    def current_run(self) -> ExecutionRun | None:
        return self._current

    @property
    def statuses(self) -> dict[str, NodeStatus]:
        """Live per-node status of the most recent run (a copy)."""
        return dict(self._current.statuses) if self._current else {}

    @property
    def running(self) -> bool:
        return bool(self._active)

    async def run_full(self, *, run_id: str | None = None) -> WorkflowExecutionResult:
        graph = self.graph.model_copy(deep=True)
        order = order_graph(graph)
        return await self._execute(graph, order, "full", run_id)

    async def run_from(
        self, node_id: str, *, run_id: str | None = None
    ) -> WorkflowExecutionResult:
        """
        Re-run `node_id` and everything after it in topological order.

        Predecessors before the start point are not re-run and contribute no
        inputs.
        """
        graph = self.graph.model_copy(deep=True)
        order = order_graph(graph)
        if node_id not in order:
            raise UnknownNodeError(node_id)
        return await self._execute(graph, order[order.index(node_id):], "partial", run_id)

    def cancel(self) -> None:
        """Request cancellation of every run in flight. No-op when idle."""
        for run in self._active:
            if not run.token.cancelled:
                logger.info("Cancellation requested for run %s", run.run_id)
                run.token.cancel()

    # -- internals ----------------------------------------------------------

    async def _execute(
        self,
        graph: WorkflowGraph,
        order: list[str],
        mode: RunMode,
        run_id: str | None = None,
    ) -> WorkflowExecutionResult:
        run = ExecutionRun(order, mode, run_id)
        node_map = graph.node_map()
        self._current = run
        self._active.append(run)

        run.state = RunState.RUNNING
        run.started_at = datetime.now(timezone.utc)
        start_time = time.perf_counter()
        logger.info("Run %s started (%s, %d nodes)", run.run_id, mode, len(order))

        try:
            await self._emit({
                "event": "workflow_start",
                "run_id": run.run_id,
                "mode": mode,
                "execution_order": order,
                "total_nodes": len(order),
            })

            for index, node_id in enumerate(order):
                run.cursor = index
                if run.token.cancelled:
                    await self._abort_remaining(run, order[index:])
                    break

                node = node_map[node_id]
                run.statuses[node_id] = NodeStatus.RUNNING
                await self._emit({
                    "event": "node_start",
                    "run_id": run.run_id,
                    "node_id": node_id,
                    "node_name": node.component_name,
                    "category": node.category.value,
                })

                inputs = resolve_node_inputs(node_id, graph.edges, node_map, run.results)
                result = await self._run_node(node, inputs)

                if run.token.cancelled:
                    run.aborted = True
                    result = result.model_copy(update={"success": False, "error": CANCELLED_ERROR})

                run.results[node_id] = result
                run.statuses[node_id] = NodeStatus.SUCCESS if result.success else NodeStatus.ERROR
                await self._emit({
                    "event": "node_complete" if result.success else "node_error",
                    "run_id": run.run_id,
                    "node_id": node_id,
                    "status": run.statuses[node_id].value,
                    "result": result.result,
                    "error": result.error,
                    "logs": result.logs,
                    "duration_ms": result.duration_ms,
                })
            else:
                run.cursor = len(order)
        finally:
            run.state = RunState.DONE
            run.completed_at = datetime.now(timezone.utc)
            self._active.remove(run)

        node_results = [run.results[nid] for nid in order if nid in run.results]
        total_ms = int((time.perf_counter() - start_time) * 1000)
        aggregate = WorkflowExecutionResult(
            run_id=run.run_id,
            mode=mode,
            success=not run.aborted and all(r.success for r in node_results),
            cancelled=run.aborted,
            execution_order=order,
            node_results=node_results,
            results=dict(run.results),
            total_duration_ms=total_ms,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )
        run.result = aggregate

        logger.info(
            "Run %s finished in %d ms (success=%s, cancelled=%s)",
            run.run_id,
            total_ms,
            aggregate.success,
            aggregate.cancelled,
        )
        await self._emit({
            "event": "workflow_cancelled" if aggregate.cancelled else "workflow_complete",
            "run_id": run.run_id,
            "success": aggregate.success,
            "total_duration_ms": total_ms,
            "node_results": [r.model_dump(mode="json") for r in node_results],
        })
        return aggregate

    async def _abort_remaining(self, run: ExecutionRun, remaining: list[str]) -> None:
        run.aborted = True
        for node_id in remaining:
            run.statuses[node_id] = NodeStatus.CANCELLED
            await self._emit({"event": "node_cancelled", "run_id": run.run_id, "node_id": node_id})
        logger.info("Run %s cancelled; %d node(s) not started", run.run_id, len(remaining))

    async def _run_node(self, node: ResolvedNode, inputs: dict[str, Any]) -> NodeResult:
        if node.kind is NodeKind.LOGIC:
            context = ExecutionContext(
                config=dict(node.config),
                node_id=node.node_id,
                node_name=node.component_name,
                category=node.category.value,
                inputs=inputs,
            )
            try:
                return await self.executor.execute(node.resolved_logic, context)
            except Exception as e:
                logger.exception("Node %s failed: %s", node.node_id, e)
                return NodeResult(
                    node_id=node.node_id,
                    node_name=node.component_name,
                    category=node.category.value,
                    success=False,
                    error=f"{type(e).__name__}: {e}",
                )

        if self.passthrough_delay_ms > 0:
            await asyncio.sleep(self.passthrough_delay_ms / 1000)
        return passthrough_result(node, inputs)

    async def _emit(self, event: dict[str, Any]) -> None:
        if self.event_sink is None:
            return
        outcome = self.event_sink(event)
        if inspect.isawaitable(outcome):
            await outcome


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------


async def execute_workflow(
    graph: WorkflowGraph,
    *,
    start_node_id: str | None = None,
    executor: NodeExecutor | None = None,
    passthrough_delay_ms: int | None = None,
    event_sink: EventSink | None = None,
) -> WorkflowExecutionResult:
    """Run a graph to completion (whole, or from `start_node_id`)."""
    coordinator = WorkflowCoordinator(
        graph,
        executor,
        passthrough_delay_ms=passthrough_delay_ms,
        event_sink=event_sink,
    )
    if start_node_id:
        return await coordinator.run_from(start_node_id)
    return await coordinator.run_full()


async def execute_workflow_streaming(
    graph: WorkflowGraph,
    *,
    start_node_id: str | None = None,
    executor: NodeExecutor | None = None,
    passthrough_delay_ms: int | None = None,
) -> AsyncIterator[str]:
    """
    Run a graph and yield Server-Sent Events as nodes start and finish.

    Yields JSON events:
    - {"event": "workflow_start", "execution_order": [...], "total_nodes": N}
    - {"event": "node_start", "node_id": "...", ...}
    - {"event": "node_complete" | "node_error", "node_id": "...", "result": ..., ...}
    - {"event": "node_cancelled", "node_id": "..."}
    - {"event": "workflow_complete" | "workflow_cancelled", "success": ..., ...}
    - {"event": "workflow_error", "error": "..."} when the graph cannot run
    """
    event_queue: asyncio.Queue = asyncio.Queue()

    async def coordinator() -> None:
        try:
            await execute_workflow(
                graph,
                start_node_id=start_node_id,
                executor=executor,
                passthrough_delay_ms=passthrough_delay_ms,
                event_sink=event_queue.put,
            )
        except WorkflowError as e:
            await event_queue.put({"event": "workflow_error", "error": str(e)})
        except Exception as e:
            logger.exception("Coordinator error: %s", e)
            await event_queue.put({
                "event": "workflow_error",
                "error": f"Internal error: {type(e).__name__}: {e}",
            })
        finally:
            # Signal end of events
            await event_queue.put(None)

    coordinator_task = asyncio.create_task(coordinator())

    try:
        while True:
            event = await event_queue.get()
            if event is None:
                break
            yield f"data: {json.dumps(event, default=str)}\n\n"
    finally:
        if not coordinator_task.done():
            coordinator_task.cancel()
            try:
                await coordinator_task
            except asyncio.CancelledError:
                pass
