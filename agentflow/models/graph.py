"""
Graph models: the resolved, execution-ready representation of an agent workflow.

Graphs are produced by the compiler from editor/persistence payloads and are
NOT persisted by the engine. Each node carries its resolved logic fragment and
its NodeKind, so the coordinator never re-derives behavior from category strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# Reserved config key holding a node-level code override.
CODE_CONFIG_KEY = "_code"


class NodeCategory(str, Enum):
    EVENT = "event"
    DATA_SCRAPPER = "data-scrapper"
    COMMUNICATION = "communication"
    AI = "ai"
    ACTION = "action"
    LOGIC = "logic"
    CUSTOM = "custom"


# Categories whose nodes run code. Everything else represents an external
# effect the engine does not perform itself and is passed through.
LOGIC_BEARING_CATEGORIES: frozenset[NodeCategory] = frozenset({
    NodeCategory.DATA_SCRAPPER,
    NodeCategory.AI,
    NodeCategory.LOGIC,
    NodeCategory.CUSTOM,
})


class NodeKind(str, Enum):
    LOGIC = "logic"
    PASSTHROUGH = "passthrough"


class WorkflowNode(BaseModel):
    """A node as authored in the editor, before logic resolution."""

    node_id: str
    component_id: str
    component_name: str
    category: NodeCategory
    config: dict[str, str] = Field(default_factory=dict)


class ResolvedNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    component_id: str
    component_name: str
    category: NodeCategory
    config: dict[str, str] = Field(default_factory=dict)
    resolved_logic: str | None = None
    kind: NodeKind = NodeKind.PASSTHROUGH


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    edge_id: str | None = None


class WorkflowGraph(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_id: str | None = None
    name: str = "Untitled"
    nodes: list[ResolvedNode]
    edges: list[WorkflowEdge] = Field(default_factory=list)

    def node_map(self) -> dict[str, ResolvedNode]:
        return {n.node_id: n for n in self.nodes}


class CompilationDiagnostic(BaseModel):
    level: Literal["error", "warning"]
    message: str
    node_id: str | None = None
    field: str | None = None


class CompilationResult(BaseModel):
    success: bool
    graph: WorkflowGraph | None = None
    execution_order: list[str] = Field(default_factory=list)
    diagnostics: list[CompilationDiagnostic] = Field(default_factory=list)
