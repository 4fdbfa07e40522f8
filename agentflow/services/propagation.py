"""
Input propagation along graph edges.

A node's inputs map each direct predecessor's component name to that
predecessor's result payload. Only predecessors that already have a result
contribute; in a partial run, predecessors outside the sub-order are absent.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from agentflow.models.execution import NodeResult
from agentflow.models.graph import ResolvedNode, WorkflowEdge

logger = logging.getLogger(__name__)


def resolve_node_inputs(
    node_id: str,
    edges: list[WorkflowEdge],
    node_map: Mapping[str, ResolvedNode],
    results: Mapping[str, NodeResult],
) -> dict[str, Any]:
    """
    Collect predecessor outputs for `node_id`, keyed by predecessor component name.

    Edges are processed in declaration order. Two predecessors sharing a
    component name collide and the later one wins; the collision is logged.
    A failed predecessor still contributes its (usually None) result.
    """
    inputs: dict[str, Any] = {}
    contributors: dict[str, str] = {}
    seen_sources: set[str] = set()

    for edge in edges:
        if edge.target != node_id or edge.source in seen_sources:
            continue
        upstream = results.get(edge.source)
        if upstream is None:
            continue
        seen_sources.add(edge.source)

        source_node = node_map.get(edge.source)
        key = source_node.component_name if source_node else edge.source

        if key in contributors:
            logger.warning(
                "Input collision on node %s: '%s' from %s overwrites value from %s",
                node_id,
                key,
                edge.source,
                contributors[key],
            )
        inputs[key] = upstream.result
        contributors[key] = edge.source

    return inputs


def passthrough_result(node: ResolvedNode, inputs: dict[str, Any]) -> NodeResult:
    """Result of a node with no logic: its output is exactly its inputs."""
    return NodeResult(
        node_id=node.node_id,
        node_name=node.component_name,
        category=node.category.value,
        success=True,
        result=inputs,
        logs=[f"{node.category.value} node processed"],
        duration_ms=0,
    )
