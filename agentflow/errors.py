"""Exceptions raised by the execution engine."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for engine errors."""


class GraphValidationError(WorkflowError):
    """The graph's structure cannot be executed."""


class CyclicGraphError(GraphValidationError):
    """The graph contains a cycle, so no topological order exists."""

    def __init__(self, cycle_nodes: list[str]):
        self.cycle_nodes = cycle_nodes
        super().__init__(f"Cycle detected involving nodes: {', '.join(cycle_nodes)}")


class UnknownNodeError(WorkflowError, KeyError):
    """A node id was given that is not part of the graph."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' is not part of the graph")

    def __str__(self) -> str:
        return self.args[0]


class SandboxUnavailableError(WorkflowError):
    """An isolated execution context could not be created."""
