"""
Workflow execution endpoints.

Graphs arrive as stored agent payloads (nodes + edges); authoring and storage
happen elsewhere. Endpoints here compile, run, stream and cancel executions.
"""

from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from agentflow.errors import GraphValidationError, UnknownNodeError
from agentflow.models.execution import RunSnapshot
from agentflow.models.graph import CompilationResult, WorkflowGraph
from agentflow.services.graph_compiler import compile_graph
from agentflow.services.run_registry import RunRegistry, get_run_registry

router = APIRouter(prefix="/workflows")


class WorkflowData(BaseModel):
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]] = Field(default_factory=list)


class ExecuteRequest(WorkflowData):
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    start_node_id: Optional[str] = None
    # Set when a task triggered the run; the execution log is then persisted
    task_id: Optional[str] = None
    triggered_by: Optional[str] = None


class RunStartedResponse(BaseModel):
    run_id: str
    execution_order: List[str]


def _raise_if_failed(result: CompilationResult) -> None:
    if not result.success:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Compilation failed",
                "diagnostics": [d.model_dump() for d in result.diagnostics],
            },
        )


def _compile_or_422(request: WorkflowData, **kwargs) -> WorkflowGraph:
    result = compile_graph(request.nodes, request.edges, **kwargs)
    _raise_if_failed(result)
    return result.graph


@router.post("/compile")
async def compile_workflow_raw(workflow_data: WorkflowData):
    """
    Compile a raw graph into a resolved WorkflowGraph.
    Returns the graph and execution order, or 422 with diagnostics.
    """
    result = compile_graph(workflow_data.nodes, workflow_data.edges, name="Unsaved Workflow")
    _raise_if_failed(result)
    return result.model_dump(mode="json")


@router.post("/execute")
async def execute_workflow_raw(request: ExecuteRequest):
    """
    Compile and execute a graph, whole or from `start_node_id`.
    When `task_id` is given, the execution log is saved for that task.
    """
    from agentflow.services.workflow_executor import execute_workflow
    from agentflow.services.execution_log import build_execution_log, save_execution_log

    graph = _compile_or_422(
        request,
        workflow_id=request.workflow_id,
        name=request.workflow_name or "Unsaved Workflow",
    )

    try:
        execution_result = await execute_workflow(graph, start_node_id=request.start_node_id)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GraphValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if request.task_id:
        log = build_execution_log(
            execution_result,
            task_id=request.task_id,
            agent_id=request.workflow_id or "unsaved",
            agent_name=graph.name,
            triggered_by=request.triggered_by,
        )
        _, warning = save_execution_log(log)
        execution_result.persistence_warning = warning

    return execution_result.model_dump(mode="json")


@router.post("/execute/stream")
async def execute_workflow_stream(request: ExecuteRequest):
    """Compile and execute a graph, streaming progress as Server-Sent Events."""
    from agentflow.services.workflow_executor import execute_workflow_streaming

    graph = _compile_or_422(request, name=request.workflow_name or "Unsaved Workflow")
    if request.start_node_id and request.start_node_id not in graph.node_map():
        raise HTTPException(status_code=404, detail=f"Node '{request.start_node_id}' is not part of the graph")

    return StreamingResponse(
        execute_workflow_streaming(graph, start_node_id=request.start_node_id),
        media_type="text/event-stream",
    )


@router.post("/runs", response_model=RunStartedResponse, status_code=202)
async def start_run(
    request: ExecuteRequest,
    registry: RunRegistry = Depends(get_run_registry),
):
    """Start a run in the background; poll it with GET /runs/{run_id}."""
    graph = _compile_or_422(
        request,
        workflow_id=request.workflow_id,
        name=request.workflow_name or "Unsaved Workflow",
    )
    try:
        handle = registry.start(graph, start_node_id=request.start_node_id)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GraphValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return RunStartedResponse(run_id=handle.run_id, execution_order=handle.order)


@router.get("/runs/{run_id}", response_model=RunSnapshot)
async def get_run(run_id: str, registry: RunRegistry = Depends(get_run_registry)):
    handle = registry.get(run_id)
    if handle is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return handle.snapshot()


@router.post("/runs/{run_id}/cancel", response_model=RunSnapshot)
async def cancel_run(run_id: str, registry: RunRegistry = Depends(get_run_registry)):
    """Request cooperative cancellation. Idempotent."""
    if not registry.cancel(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return registry.get(run_id).snapshot()
