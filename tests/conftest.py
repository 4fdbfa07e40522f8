import os
import sys
from pathlib import Path

import pytest

# Keep API-level runs in-process and off the database unless a test opts in.
os.environ.setdefault("AGENTFLOW_SANDBOX_MODE", "inprocess")
os.environ.setdefault("AGENTFLOW_PERSIST_EXECUTIONS", "0")

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))

from agentflow.models.graph import (  # noqa: E402
    LOGIC_BEARING_CATEGORIES,
    NodeCategory,
    NodeKind,
    ResolvedNode,
    WorkflowEdge,
    WorkflowGraph,
)
from agentflow.services.sandbox import InProcessSandbox, NodeExecutor  # noqa: E402


def build_node(
    node_id: str,
    code: str | None = None,
    *,
    name: str | None = None,
    category: NodeCategory = NodeCategory.LOGIC,
    config: dict[str, str] | None = None,
) -> ResolvedNode:
    is_logic = category in LOGIC_BEARING_CATEGORIES and code is not None
    return ResolvedNode(
        node_id=node_id,
        component_id=f"{node_id}-component",
        component_name=name or node_id,
        category=category,
        config=config or {},
        resolved_logic=code if is_logic else None,
        kind=NodeKind.LOGIC if is_logic else NodeKind.PASSTHROUGH,
    )


def build_graph(nodes: list[ResolvedNode], edges: list[tuple[str, str]] = ()) -> WorkflowGraph:
    return WorkflowGraph(
        workflow_id="test-workflow",
        name="Test Workflow",
        nodes=nodes,
        edges=[WorkflowEdge(source=s, target=t) for s, t in edges],
    )


@pytest.fixture
def make_node():
    return build_node


@pytest.fixture
def make_graph():
    return build_graph


@pytest.fixture
def executor() -> NodeExecutor:
    """Fast in-process executor for coordinator tests."""
    return NodeExecutor(InProcessSandbox(), timeout_ms=2000)
