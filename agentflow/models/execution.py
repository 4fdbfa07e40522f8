"""
Execution models: per-node results, run state and the run aggregate.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    # Never started because the run was cancelled first.
    CANCELLED = "cancelled"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


RunMode = Literal["full", "partial"]


class ExecutionContext(BaseModel):
    """What a node's code sees as `context`."""

    config: dict[str, str] = Field(default_factory=dict)
    node_id: str
    node_name: str
    category: str
    inputs: dict[str, Any] = Field(default_factory=dict)


class NodeResult(BaseModel):
    node_id: str = ""
    node_name: str = ""
    category: str = ""
    success: bool
    result: Any = None
    error: str | None = None
    logs: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    detected_packages: list[str] | None = None


class WorkflowExecutionResult(BaseModel):
    run_id: str
    mode: RunMode = "full"
    success: bool
    cancelled: bool = False
    execution_order: list[str]
    node_results: list[NodeResult]
    results: dict[str, NodeResult]
    total_duration_ms: int
    started_at: datetime
    completed_at: datetime
    persistence_warning: str | None = None


class RunSnapshot(BaseModel):
    """Point-in-time copy of a run, safe to hand to observers."""

    run_id: str
    mode: RunMode
    state: RunState
    cancelling: bool
    execution_order: list[str]
    cursor: int
    statuses: dict[str, NodeStatus]
    results: dict[str, NodeResult]
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionLog(BaseModel):
    """Persistable summary of a completed run, bound to the task that triggered it."""

    task_id: str
    agent_id: str
    agent_name: str
    status: Literal["running", "success", "error"]
    node_results: list[NodeResult]
    total_duration: int
    triggered_by: str = "System"
    started_at: datetime
    completed_at: datetime | None = None
