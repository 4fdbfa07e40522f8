"""
Graph compiler: turns a stored agent graph into a validated, resolved WorkflowGraph.

Pipeline: Parse → Validate → Resolve logic → Toposort → Build WorkflowGraph
"""

from __future__ import annotations

from typing import Any

from agentflow.errors import CyclicGraphError
from agentflow.models.component_registry import ComponentResolver, get_default_registry
from agentflow.models.graph import (
    CODE_CONFIG_KEY,
    LOGIC_BEARING_CATEGORIES,
    CompilationDiagnostic,
    CompilationResult,
    NodeCategory,
    NodeKind,
    ResolvedNode,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
)
from agentflow.services.ordering import topological_order


def _field(raw: dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present key among camelCase/snake_case spellings."""
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return default


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compile_graph(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    *,
    resolver: ComponentResolver | None = None,
    workflow_id: str | None = None,
    name: str = "Untitled",
) -> CompilationResult:
    """
    Compile stored agent nodes and edges into a WorkflowGraph.

    Returns a CompilationResult with either a graph and its execution order,
    or diagnostics.
    """
    resolver = resolver or get_default_registry()
    diagnostics: list[CompilationDiagnostic] = []

    # 1. Parse
    parsed: list[WorkflowNode] = []
    seen_ids: set[str] = set()
    for raw in nodes:
        nid = _field(raw, "nodeId", "node_id", "id")
        if not nid:
            diagnostics.append(CompilationDiagnostic(
                level="error", message="Node missing 'nodeId' field"
            ))
            continue
        if nid in seen_ids:
            diagnostics.append(CompilationDiagnostic(
                level="error",
                message=f"Duplicate node ID '{nid}'",
                node_id=nid,
            ))
            continue
        seen_ids.add(nid)

        raw_category = _field(raw, "category", default="")
        try:
            category = NodeCategory(raw_category)
        except ValueError:
            component = resolver.get_component(_field(raw, "componentId", "component_id", default=""))
            if component is None:
                diagnostics.append(CompilationDiagnostic(
                    level="error",
                    message=f"Unknown category '{raw_category}'",
                    node_id=nid,
                    field="category",
                ))
                continue
            category = component.category

        config = _field(raw, "config", default={}) or {}
        parsed.append(WorkflowNode(
            node_id=nid,
            component_id=_field(raw, "componentId", "component_id", default=""),
            component_name=_field(raw, "componentName", "component_name", default=nid),
            category=category,
            config={str(k): "" if v is None else str(v) for k, v in config.items()},
        ))

    parsed_edges: list[WorkflowEdge] = []
    for raw in edges:
        parsed_edges.append(WorkflowEdge(
            source=raw.get("source", ""),
            target=raw.get("target", ""),
            edge_id=_field(raw, "edgeId", "edge_id", "id"),
        ))

    if diagnostics:
        return CompilationResult(success=False, diagnostics=diagnostics)

    if not parsed:
        diagnostics.append(CompilationDiagnostic(
            level="error",
            message="Workflow must contain at least one node",
        ))
        return CompilationResult(success=False, diagnostics=diagnostics)

    # 2. Validate
    diagnostics.extend(_validate(parsed, parsed_edges, resolver))
    if any(d.level == "error" for d in diagnostics):
        return CompilationResult(success=False, diagnostics=diagnostics)

    # 3. Resolve logic
    resolved = [resolve_node(node, resolver) for node in parsed]

    # 4. Toposort
    try:
        execution_order = topological_order([n.node_id for n in resolved], parsed_edges)
    except CyclicGraphError as exc:
        diagnostics.append(CompilationDiagnostic(level="error", message=str(exc)))
        return CompilationResult(success=False, diagnostics=diagnostics)

    graph = WorkflowGraph(
        workflow_id=workflow_id,
        name=name,
        nodes=resolved,
        edges=parsed_edges,
    )
    return CompilationResult(
        success=True,
        graph=graph,
        execution_order=execution_order,
        diagnostics=diagnostics,
    )


def resolve_node(node: WorkflowNode, resolver: ComponentResolver) -> ResolvedNode:
    """
    Resolve a node's logic and kind once, ahead of execution.

    Node-level `_code` wins over the component default. Only logic-bearing
    categories with a code fragment (even a blank one) become logic nodes.
    """
    override = node.config.get(CODE_CONFIG_KEY)
    if override is not None and override.strip():
        logic: str | None = override
    else:
        component = resolver.get_component(node.component_id)
        if component is not None and component.default_code is not None:
            logic = component.default_code
        else:
            logic = override

    is_logic = node.category in LOGIC_BEARING_CATEGORIES and logic is not None
    return ResolvedNode(
        node_id=node.node_id,
        component_id=node.component_id,
        component_name=node.component_name,
        category=node.category,
        config=dict(node.config),
        resolved_logic=logic if is_logic else None,
        kind=NodeKind.LOGIC if is_logic else NodeKind.PASSTHROUGH,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _validate(
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
    resolver: ComponentResolver,
) -> list[CompilationDiagnostic]:
    diags: list[CompilationDiagnostic] = []
    node_ids = {n.node_id for n in nodes}

    for node in nodes:
        if node.component_id and resolver.get_component(node.component_id) is None:
            diags.append(CompilationDiagnostic(
                level="warning",
                message=f"Unknown component '{node.component_id}'; no default logic available",
                node_id=node.node_id,
            ))

    for edge in edges:
        if edge.source not in node_ids:
            diags.append(CompilationDiagnostic(
                level="error",
                message=f"Edge references unknown source node '{edge.source}'",
            ))
            continue
        if edge.target not in node_ids:
            diags.append(CompilationDiagnostic(
                level="error",
                message=f"Edge references unknown target node '{edge.target}'",
            ))
            continue
        if edge.source == edge.target:
            diags.append(CompilationDiagnostic(
                level="error",
                message=f"Node '{edge.source}' cannot depend on itself",
                node_id=edge.source,
            ))

    # Fan-in collision: two predecessors with the same component name
    component_names = {n.node_id: n.component_name for n in nodes}
    targets_by_source_name: dict[tuple[str, str], str] = {}
    for edge in edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            continue
        key = (edge.target, component_names[edge.source])
        previous = targets_by_source_name.get(key)
        if previous is not None and previous != edge.source:
            diags.append(CompilationDiagnostic(
                level="warning",
                message=(
                    f"Node '{edge.target}' has several predecessors named "
                    f"'{component_names[edge.source]}'; only the last one's output is kept"
                ),
                node_id=edge.target,
            ))
        targets_by_source_name[key] = edge.source

    return diags
