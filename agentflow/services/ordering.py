"""
Topological ordering (Kahn's algorithm).

Ties are broken by declaration order: zero in-degree nodes are seeded in the
order the nodes were declared, and neighbors are released in the order their
edges were declared. An unchanged graph therefore always yields the same order.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable

from agentflow.errors import CyclicGraphError, GraphValidationError
from agentflow.models.graph import WorkflowEdge, WorkflowGraph


def build_dependency_graph(
    node_ids: list[str],
    edges: Iterable[WorkflowEdge],
) -> tuple[dict[str, int], dict[str, list[str]]]:
    """
    Build dependency tracking structures from edges.

    Returns:
        in_degree: count of distinct upstream nodes for each node
        adjacency: node -> downstream nodes, in edge declaration order
    """
    in_degree: dict[str, int] = {nid: 0 for nid in node_ids}
    adjacency: dict[str, list[str]] = {nid: [] for nid in node_ids}

    for edge in edges:
        if edge.source not in in_degree:
            raise GraphValidationError(f"Edge references unknown source node '{edge.source}'")
        if edge.target not in in_degree:
            raise GraphValidationError(f"Edge references unknown target node '{edge.target}'")
        if edge.source == edge.target:
            raise CyclicGraphError([edge.source])

        # Parallel edges between the same pair count as one dependency
        if edge.target not in adjacency[edge.source]:
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

    return in_degree, adjacency


def topological_order(node_ids: list[str], edges: Iterable[WorkflowEdge]) -> list[str]:
    """Return every node after all of its direct predecessors, or raise CyclicGraphError."""
    if len(set(node_ids)) != len(node_ids):
        raise GraphValidationError("Duplicate node ids in graph")

    in_degree, adjacency = build_dependency_graph(node_ids, edges)

    queue: deque[str] = deque(nid for nid in node_ids if in_degree[nid] == 0)
    order: list[str] = []

    while queue:
        nid = queue.popleft()
        order.append(nid)
        for neighbor in adjacency[nid]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(node_ids):
        raise CyclicGraphError([nid for nid in node_ids if in_degree[nid] > 0])

    return order


def order_graph(graph: WorkflowGraph) -> list[str]:
    return topological_order([n.node_id for n in graph.nodes], graph.edges)
