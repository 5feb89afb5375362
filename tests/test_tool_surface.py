"""
Tests for tool surface construction.
"""

from dygram.graph.conditions import build_condition_scope
from dygram.graph.machine import (
    Annotation,
    Attribute,
    MachineEdge,
    MachineNode,
    MachineSnapshot,
)
from dygram.graph.permissions import readable_fields, resolve_context_permissions
from dygram.graph.tool_surface import (
    EffectType,
    build_tool_surface,
    meta_enabled,
    tool_safe_name,
)
from dygram.graph.transitions import classify_transitions
from dygram.llm.provider import Tool
from dygram.runner.meta_tools import META_TOOL_NAMES, META_TOOLS


def _surface(snapshot, node, dynamic_tools=None):
    permissions = resolve_context_permissions(node, snapshot)
    scope = build_condition_scope(snapshot, node, readable_fields(permissions), {})
    classification = classify_transitions(snapshot, node, scope)
    return build_tool_surface(
        snapshot,
        node,
        classification,
        permissions,
        meta_tools=META_TOOLS,
        dynamic_tools=dynamic_tools,
    )


def _branching_snapshot(**overrides):
    nodes = overrides.get(
        "nodes",
        [
            MachineNode(name="B", type="task"),
            MachineNode(name="C", type="state"),
            MachineNode(name="D", type="state"),
        ],
    )
    edges = overrides.get(
        "edges",
        [MachineEdge(source="B", target="C"), MachineEdge(source="B", target="D")],
    )
    return MachineSnapshot(
        title="Branching",
        nodes=nodes,
        edges=edges,
        attributes=overrides.get("attributes", []),
    )


# ---- Transitions ----
def test_one_transition_tool_per_agent_edge():
    surface = _surface(_branching_snapshot(), "B")

    assert surface.names() == ["transition_to_C", "transition_to_D"]
    assert surface.transition_count == 2
    assert not surface.has_work_tools
    assert surface.get("transition_to_C").target == "C"
    assert surface.tools[0].parameters["required"] == ["reason"]


def test_async_edge_offers_spawn_tool():
    snapshot = _branching_snapshot(
        edges=[
            MachineEdge(source="B", target="C"),
            MachineEdge(source="B", target="D", annotations=[Annotation(name="async")]),
        ]
    )

    surface = _surface(snapshot, "B")

    assert surface.names() == ["transition_to_C", "spawn_async_to_D"]
    assert surface.get("spawn_async_to_D").type == EffectType.SPAWN
    assert "await_result" in surface.tools[1].parameters["properties"]


def test_tool_names_are_sanitized():
    assert tool_safe_name("Review Draft-2") == "Review_Draft_2"


# ---- Context tools ----
def _context_snapshot():
    return _branching_snapshot(
        nodes=[
            MachineNode(name="B", type="task"),
            MachineNode(name="C", type="state"),
            MachineNode(name="D", type="state"),
            MachineNode(name="Settings", type="context"),
            MachineNode(name="Results", type="context"),
            MachineNode(name="Archive", type="context"),
            MachineNode(name="Private", type="context"),
        ],
        edges=[
            MachineEdge(source="B", target="C"),
            MachineEdge(source="B", target="D"),
            MachineEdge(source="B", target="Settings", label="read: level"),
            MachineEdge(source="B", target="Results", label="write: score"),
            MachineEdge(source="B", target="Archive", label="store"),
        ],
    )


def test_context_tools_follow_grants():
    surface = _surface(_context_snapshot(), "B")

    assert surface.names() == [
        "transition_to_C",
        "transition_to_D",
        "read_Settings",
        "write_Results",
        "store_Archive",
    ]
    assert surface.has_work_tools
    assert not any("Private" in name for name in surface.names())


def test_restricted_fields_shape_tool_schemas():
    surface = _surface(_context_snapshot(), "B")
    tools = {t.name: t for t in surface.tools}

    read_items = tools["read_Settings"].parameters["properties"]["fields"]["items"]
    assert read_items["enum"] == ["level"]

    data_schema = tools["write_Results"].parameters["properties"]["data"]
    assert list(data_schema["properties"]) == ["score"]
    assert data_schema["additionalProperties"] is False


# ---- Meta / dynamic tools ----
def test_meta_tools_hidden_without_meta_flag():
    surface = _surface(_branching_snapshot(), "B")
    assert not set(surface.names()) & META_TOOL_NAMES


def test_meta_tools_offered_for_meta_node():
    snapshot = _branching_snapshot(
        nodes=[
            MachineNode(name="B", type="task", attributes=[Attribute(name="meta", value="true")]),
            MachineNode(name="C", type="state"),
            MachineNode(name="D", type="state"),
        ]
    )

    surface = _surface(snapshot, "B")

    assert meta_enabled(snapshot, "B")
    assert surface.names()[2:] == [t.name for t in META_TOOLS]
    assert surface.get("update_definition").type == EffectType.META
    assert surface.has_work_tools


def test_meta_tools_offered_for_meta_machine():
    snapshot = _branching_snapshot(attributes=[Attribute(name="meta", value=True)])
    assert meta_enabled(snapshot, "C")
    assert "construct_tool" in _surface(snapshot, "B").names()


def test_dynamic_tools_come_last():
    dynamic = Tool(name="double", description="Double a number", parameters={"type": "object"})

    surface = _surface(_context_snapshot(), "B", dynamic_tools=[dynamic])

    assert surface.names()[-1] == "double"
    assert surface.get("double").type == EffectType.DYNAMIC


def test_duplicate_tool_names_are_skipped():
    dynamic = Tool(name="transition_to_C", description="clash", parameters={"type": "object"})

    surface = _surface(_branching_snapshot(), "B", dynamic_tools=[dynamic])

    assert surface.names().count("transition_to_C") == 1
    assert surface.get("transition_to_C").type == EffectType.TRANSITION
