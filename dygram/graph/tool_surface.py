"""
Tool surface construction.

The surface is the complete list of actions the oracle may pick from at
one (path, node) position. Each tool maps to exactly one Effect the
executor knows how to apply; a tool name that is not on the surface
built for the step is never applied.

Order of the surface:
1. transition_to_<target> / spawn_async_to_<target>, one per agent-decided edge
2. read_<ctx>, then write_<ctx> or store_<ctx>, per granted context
3. meta tools, when the node or the machine has meta enabled
4. dynamic tools constructed earlier in the run
"""

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum

from dygram.graph.machine import MachineSnapshot, has_meta
from dygram.graph.permissions import ContextPermission
from dygram.graph.transitions import CandidateTransition, TransitionClassification
from dygram.llm.provider import Tool

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


class EffectType(StrEnum):
    TRANSITION = "transition"
    SPAWN = "spawn"
    READ = "read"
    WRITE = "write"
    STORE = "store"
    META = "meta"
    DYNAMIC = "dynamic"


WORK_EFFECTS = frozenset({EffectType.WRITE, EffectType.STORE, EffectType.META})


@dataclass
class Effect:
    """What applying a surface tool does."""

    type: EffectType
    tool_name: str
    target: str | None = None  # Transition target or context node
    candidate: CandidateTransition | None = None
    permission: ContextPermission | None = None


@dataclass
class ToolSurface:
    """Tools offered at one decision point and the effect behind each."""

    node: str
    tools: list[Tool] = field(default_factory=list)
    effects: dict[str, Effect] = field(default_factory=dict)

    def names(self) -> list[str]:
        return [t.name for t in self.tools]

    def get(self, name: str) -> Effect | None:
        return self.effects.get(name)

    @property
    def transition_count(self) -> int:
        return sum(
            1 for e in self.effects.values() if e.type in (EffectType.TRANSITION, EffectType.SPAWN)
        )

    @property
    def has_work_tools(self) -> bool:
        """True if anything besides transitions, reads and dynamic tools is offered."""
        return any(e.type in WORK_EFFECTS for e in self.effects.values())

    def add(self, tool: Tool, effect: Effect) -> None:
        if tool.name in self.effects:
            logger.warning(f"      ⚠ Duplicate tool '{tool.name}' at '{self.node}' skipped")
            return
        self.tools.append(tool)
        self.effects[tool.name] = effect


def tool_safe_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def transition_tool_name(target: str) -> str:
    return f"transition_to_{tool_safe_name(target)}"


def spawn_tool_name(target: str) -> str:
    return f"spawn_async_to_{tool_safe_name(target)}"


# ---------------------------------------------------------------------------
# Tool builders
# ---------------------------------------------------------------------------


def _transition_tool(candidate: CandidateTransition) -> Tool:
    description = f"Transition to '{candidate.target}'"
    if candidate.description:
        description += f": {candidate.description}"
    if candidate.inherited_from:
        description += f" (exit of module '{candidate.inherited_from}')"
    return Tool(
        name=transition_tool_name(candidate.target),
        description=description,
        parameters={
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why this transition is taken"},
            },
            "required": ["reason"],
        },
    )


def _spawn_tool(candidate: CandidateTransition) -> Tool:
    description = f"Start a parallel path at '{candidate.target}'"
    if candidate.description:
        description += f": {candidate.description}"
    return Tool(
        name=spawn_tool_name(candidate.target),
        description=description,
        parameters={
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why the path is spawned"},
                "await_result": {
                    "type": "boolean",
                    "description": "Wait here until the spawned path finishes",
                },
            },
            "required": ["reason"],
        },
    )


def _read_tool(context_name: str, permission: ContextPermission) -> Tool:
    items: dict = {"type": "string"}
    if permission.fields is not None:
        items["enum"] = list(permission.fields)
    description = f"Read attributes of context '{context_name}'"
    if permission.inherited_from:
        description += f" (inherited from '{permission.inherited_from}')"
    return Tool(
        name=f"read_{tool_safe_name(context_name)}",
        description=description,
        parameters={
            "type": "object",
            "properties": {
                "fields": {
                    "type": "array",
                    "items": items,
                    "description": "Fields to read; omit for all permitted fields",
                },
            },
        },
    )


def _write_tool(context_name: str, permission: ContextPermission, verb: str) -> Tool:
    data_schema: dict = {"type": "object", "description": "Field name -> new value"}
    if permission.fields is not None:
        data_schema["properties"] = {f: {} for f in permission.fields}
        data_schema["additionalProperties"] = False
        fields_note = f" (fields: {', '.join(permission.fields)})"
    else:
        fields_note = ""
    return Tool(
        name=f"{verb}_{tool_safe_name(context_name)}",
        description=f"{verb.capitalize()} attributes of context '{context_name}'{fields_note}",
        parameters={
            "type": "object",
            "properties": {"data": data_schema},
            "required": ["data"],
        },
    )


# ---------------------------------------------------------------------------
# Surface
# ---------------------------------------------------------------------------


def meta_enabled(snapshot: MachineSnapshot, node_name: str) -> bool:
    """Meta tools are offered when the node or the machine has a truthy meta attribute."""
    node = snapshot.get_node(node_name)
    return (node is not None and has_meta(node)) or snapshot.is_meta_enabled()


def build_tool_surface(
    snapshot: MachineSnapshot,
    node_name: str,
    classification: TransitionClassification,
    permissions: dict[str, ContextPermission],
    meta_tools: list[Tool] | None = None,
    dynamic_tools: list[Tool] | None = None,
) -> ToolSurface:
    """
    Build the tool surface for a node.

    Args:
        snapshot: Snapshot the step runs against
        node_name: Current node of the path
        classification: Transition classification for the node
        permissions: Resolved context permissions for the node
        meta_tools: Meta tool definitions (offered only when meta is enabled)
        dynamic_tools: Dynamic tools registered so far in the run

    Returns:
        ToolSurface with tools in offer order and their effects
    """
    surface = ToolSurface(node=node_name)

    for candidate in classification.agent_decided:
        if candidate.is_async:
            surface.add(
                _spawn_tool(candidate),
                Effect(
                    type=EffectType.SPAWN,
                    tool_name=spawn_tool_name(candidate.target),
                    target=candidate.target,
                    candidate=candidate,
                ),
            )
        else:
            surface.add(
                _transition_tool(candidate),
                Effect(
                    type=EffectType.TRANSITION,
                    tool_name=transition_tool_name(candidate.target),
                    target=candidate.target,
                    candidate=candidate,
                ),
            )

    for context_name, permission in permissions.items():
        if snapshot.get_node(context_name) is None:
            continue
        if permission.can_read:
            tool = _read_tool(context_name, permission)
            surface.add(
                tool,
                Effect(EffectType.READ, tool.name, target=context_name, permission=permission),
            )
        if permission.can_write:
            tool = _write_tool(context_name, permission, "write")
            surface.add(
                tool,
                Effect(EffectType.WRITE, tool.name, target=context_name, permission=permission),
            )
        elif permission.can_store:
            tool = _write_tool(context_name, permission, "store")
            surface.add(
                tool,
                Effect(EffectType.STORE, tool.name, target=context_name, permission=permission),
            )

    if meta_tools and meta_enabled(snapshot, node_name):
        for tool in meta_tools:
            surface.add(tool, Effect(EffectType.META, tool.name))

    for tool in dynamic_tools or []:
        surface.add(tool, Effect(EffectType.DYNAMIC, tool.name))

    logger.debug(f"🔧 Tool surface at '{node_name}': {', '.join(surface.names()) or '(empty)'}")
    return surface
