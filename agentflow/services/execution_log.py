"""
Execution log persistence.

Callers (the API layer, task automation) turn a finished run into an
ExecutionLog and may store it in the `agent_executions` table. The engine
core never calls into this module.
"""

from __future__ import annotations

import logging

from agentflow.config import get_settings
from agentflow.db.supabase import get_supabase_client
from agentflow.models.execution import ExecutionLog, WorkflowExecutionResult

logger = logging.getLogger(__name__)

EXECUTIONS_TABLE = "agent_executions"


def build_execution_log(
    result: WorkflowExecutionResult,
    *,
    task_id: str,
    agent_id: str,
    agent_name: str,
    triggered_by: str | None = None,
) -> ExecutionLog:
    return ExecutionLog(
        task_id=task_id,
        agent_id=agent_id,
        agent_name=agent_name,
        status="success" if result.success else "error",
        node_results=result.node_results,
        total_duration=result.total_duration_ms,
        triggered_by=triggered_by or "System",
        started_at=result.started_at,
        completed_at=result.completed_at,
    )


def save_execution_log(log: ExecutionLog) -> tuple[str | None, str | None]:
    """
    Persist an execution log.

    Returns:
        (execution_id, persistence_warning). Failures are reported as a
        warning, never raised, so a finished run is not turned into an error.
    """
    if not get_settings().persist_executions:
        return None, None

    row = log.model_dump(mode="json")
    try:
        supabase = get_supabase_client()
        insert_result = supabase.table(EXECUTIONS_TABLE).insert(row).execute()
    except Exception as e:
        logger.exception("Failed to save execution log for task %s: %s", log.task_id, str(e))
        return None, "Execution completed but could not be saved to history."

    if not insert_result.data:
        logger.warning("Execution log insert returned no data for task %s", log.task_id)
        return None, "Execution saved without confirmation due to a logging issue."
    return str(insert_result.data[0]["id"]), None
