"""
In-memory registry of background runs.

Lets an API caller start a run, poll its live snapshot and cancel it. Each
run gets its own coordinator, so runs over the same graph never share state.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agentflow.errors import UnknownNodeError
from agentflow.models.execution import NodeStatus, RunSnapshot, RunState
from agentflow.models.graph import WorkflowGraph
from agentflow.services.ordering import order_graph
from agentflow.services.sandbox import NodeExecutor
from agentflow.services.workflow_executor import WorkflowCoordinator

logger = logging.getLogger(__name__)

MAX_FINISHED_RUNS = 100


@dataclass
class RunHandle:
    run_id: str
    coordinator: WorkflowCoordinator
    task: asyncio.Task
    order: list[str]
    mode: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def done(self) -> bool:
        return self.task.done()

    def snapshot(self) -> RunSnapshot:
        run = self.coordinator.current_run
        if run is not None and run.run_id == self.run_id:
            return run.snapshot()

        # Not started yet, or cancelled before it could start
        not_started = self.task.cancelled()
        status = NodeStatus.CANCELLED if not_started else NodeStatus.PENDING
        return RunSnapshot(
            run_id=self.run_id,
            mode=self.mode,
            state=RunState.DONE if not_started else RunState.IDLE,
            cancelling=False,
            execution_order=list(self.order),
            cursor=0,
            statuses={nid: status for nid in self.order},
            results={},
        )


class RunRegistry:
    def __init__(self, max_finished: int = MAX_FINISHED_RUNS):
        self._runs: dict[str, RunHandle] = {}
        self._max_finished = max_finished

    def start(
        self,
        graph: WorkflowGraph,
        *,
        start_node_id: str | None = None,
        executor: NodeExecutor | None = None,
        passthrough_delay_ms: int | None = None,
    ) -> RunHandle:
        """
        Validate the graph and start a run in the background.

        Raises CyclicGraphError / UnknownNodeError synchronously, before any
        run exists.
        """
        order = order_graph(graph)
        if start_node_id is not None:
            if start_node_id not in order:
                raise UnknownNodeError(start_node_id)
            order = order[order.index(start_node_id):]

        run_id = str(uuid.uuid4())
        coordinator = WorkflowCoordinator(
            graph, executor, passthrough_delay_ms=passthrough_delay_ms
        )
        if start_node_id is not None:
            coro = coordinator.run_from(start_node_id, run_id=run_id)
        else:
            coro = coordinator.run_full(run_id=run_id)

        task = asyncio.create_task(coro, name=f"agentflow-run-{run_id}")
        task.add_done_callback(_log_task_failure)

        handle = RunHandle(
            run_id=run_id,
            coordinator=coordinator,
            task=task,
            order=order,
            mode="partial" if start_node_id is not None else "full",
        )
        self._prune()
        self._runs[run_id] = handle
        return handle

    def get(self, run_id: str) -> RunHandle | None:
        return self._runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """Cancel a run. Returns False if the run is unknown."""
        handle = self._runs.get(run_id)
        if handle is None:
            return False
        if handle.coordinator.current_run is None and not handle.done:
            # Never got to start; drop it entirely
            handle.task.cancel()
        else:
            handle.coordinator.cancel()
        return True

    def _prune(self) -> None:
        finished = [h for h in self._runs.values() if h.done]
        excess = len(finished) - self._max_finished + 1
        if excess <= 0:
            return
        for handle in sorted(finished, key=lambda h: h.created_at)[:excess]:
            del self._runs[handle.run_id]


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background run %s failed: %s", task.get_name(), exc, exc_info=exc)


_registry = RunRegistry()


def get_run_registry() -> RunRegistry:
    return _registry
