"""
Component registry: source of truth for each component's category and default logic.

Maps component ids to their category and default code fragment. The real
catalog lives in persistence; this in-memory registry is what the compiler
consults, and it ships with a few built-in components.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel

from agentflow.models.graph import LOGIC_BEARING_CATEGORIES, NodeCategory


class ComponentSpec(BaseModel):
    component_id: str
    name: str
    category: NodeCategory
    default_code: str | None = None
    description: str = ""

    @property
    def logic_bearing(self) -> bool:
        return self.category in LOGIC_BEARING_CATEGORIES


class ComponentResolver(Protocol):
    def get_component(self, component_id: str) -> ComponentSpec | None:
        ...


# ---------------------------------------------------------------------------
# Built-in components
# ---------------------------------------------------------------------------

BUILTIN_COMPONENTS: dict[str, ComponentSpec] = {
    # ---- Trigger / effect nodes ----
    "manual-trigger": ComponentSpec(
        component_id="manual-trigger",
        name="Manual Trigger",
        category=NodeCategory.EVENT,
        description="Starts a workflow when run by a user.",
    ),
    "send-email": ComponentSpec(
        component_id="send-email",
        name="Send Email",
        category=NodeCategory.COMMUNICATION,
        description="Delivers its inputs by email (performed outside the engine).",
    ),
    "update-task": ComponentSpec(
        component_id="update-task",
        name="Update Task",
        category=NodeCategory.ACTION,
        description="Applies its inputs to the owning task (performed outside the engine).",
    ),

    # ---- Logic nodes ----
    "merge-inputs": ComponentSpec(
        component_id="merge-inputs",
        name="Merge Inputs",
        category=NodeCategory.LOGIC,
        default_code=(
            "merged = {}\n"
            "for value in context.inputs.values():\n"
            "    if isinstance(value, dict):\n"
            "        merged.update(value)\n"
            "return merged\n"
        ),
        description="Shallow-merges all dict inputs into one dict.",
    ),
    "read-config": ComponentSpec(
        component_id="read-config",
        name="Read Config",
        category=NodeCategory.CUSTOM,
        default_code="return dict(context.config)\n",
        description="Returns the node's configuration mapping.",
    ),
}


class ComponentRegistry:
    """In-memory component lookup, seeded with the built-in components."""

    def __init__(self, components: dict[str, ComponentSpec] | None = None):
        self._components: dict[str, ComponentSpec] = dict(BUILTIN_COMPONENTS)
        if components:
            self._components.update(components)

    def register(self, spec: ComponentSpec) -> None:
        self._components[spec.component_id] = spec

    def get_component(self, component_id: str) -> ComponentSpec | None:
        """Look up a component, returning None if unknown."""
        return self._components.get(component_id)

    def __contains__(self, component_id: str) -> bool:
        return component_id in self._components


_default_registry = ComponentRegistry()


def get_default_registry() -> ComponentRegistry:
    return _default_registry
