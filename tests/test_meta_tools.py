"""
Tests for MetaToolManager: machine mutations and dynamic tools.
"""

import json

import pytest

from dygram.errors import EffectApplicationError
from dygram.graph.machine import Attribute, MachineEdge, MachineNode, MachineSnapshot
from dygram.llm.provider import DecisionRequest, Oracle, ToolUse
from dygram.runner.meta_tools import META_TOOL_NAMES, MetaToolManager, parse_composition
from dygram.schemas.execution import (
    DynamicToolStrategy,
    ExecutionPath,
    ExecutionState,
    PathStatus,
)


class FakeOracle(Oracle):
    """Answers agent-backed tools by echoing what it was asked."""

    def __init__(self):
        self.tool_calls = []

    async def decide(self, request: DecisionRequest) -> ToolUse | None:
        return None

    async def run_tool(self, name, instructions, tool_input):
        self.tool_calls.append((name, instructions, tool_input))
        return {"summary": f"{instructions}: {tool_input.get('text', '')}"}


def _state(extra_nodes=None, path_at="Draft"):
    snapshot = MachineSnapshot(
        title="Writer",
        nodes=[
            MachineNode(name="Start", type="state"),
            MachineNode(name="Draft", type="task"),
            MachineNode(name="Done", type="state"),
        ]
        + (extra_nodes or []),
        edges=[
            MachineEdge(source="Start", target="Draft"),
            MachineEdge(source="Draft", target="Done"),
        ],
    )
    state = ExecutionState(snapshot=snapshot)
    if path_at:
        state.paths.append(ExecutionPath(id="path_0", current_node=path_at))
    return state


def _manager(**kwargs):
    state = kwargs.pop("state", None) or _state()
    return MetaToolManager(state, **kwargs)


DOUBLE_CODE = "def run(input):\n    return {'value': input['value'] * 2}"
NUMBER_SCHEMA = {
    "type": "object",
    "properties": {"value": {"type": "number"}},
    "required": ["value"],
}


# ---- Construction ----
@pytest.mark.asyncio
async def test_construct_and_list_tool():
    manager = _manager()

    result = await manager.construct_tool(
        name="double",
        description="Double a number",
        input_schema=NUMBER_SCHEMA,
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )

    assert result["success"] is True
    assert manager.state.mutations[-1].type == "tool_constructed"
    assert [t.name for t in manager.get_dynamic_tools()] == ["double"]

    listing = await manager.list_available_tools(include_source=True)
    assert listing["dynamicTools"][0]["name"] == "double"
    assert listing["dynamicTools"][0]["implementation"] == DOUBLE_CODE
    assert listing["totalCount"] == 1 + len(META_TOOL_NAMES)

    only_meta = await manager.list_available_tools(filter_type="meta")
    assert only_meta["dynamicTools"] == []


@pytest.mark.asyncio
async def test_executing_dynamic_tool_leaves_context_untouched():
    manager = _manager()
    await manager.construct_tool(
        name="double",
        input_schema=NUMBER_SCHEMA,
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )

    assert await manager.execute_dynamic_tool("double", {"value": 21}) == {"value": 42}
    assert manager.state.context == {}


@pytest.mark.asyncio
async def test_duplicate_and_meta_names_are_rejected():
    manager = _manager()
    await manager.construct_tool(name="helper", implementation_details="Help out")

    duplicate = await manager.construct_tool(name="helper")
    clash = await manager.construct_tool(name="update_definition")

    assert duplicate["success"] is False
    assert "propose_tool_improvement" in duplicate["message"]
    assert clash["success"] is False
    assert len(manager.state.dynamic_tools) == 1


@pytest.mark.asyncio
async def test_code_generation_alias_is_accepted():
    manager = _manager()

    result = await manager.construct_tool(
        name="triple",
        implementation_strategy="code_generation",
        implementation_details="result = input['value'] * 3",
    )

    assert result["success"] is True
    assert manager.get_definition("triple").strategy == DynamicToolStrategy.GENERATED_CODE


@pytest.mark.asyncio
async def test_unknown_strategy_and_bad_code_fail():
    manager = _manager()

    unknown = await manager.construct_tool(name="x", implementation_strategy="magic")
    unsafe = await manager.construct_tool(
        name="y",
        implementation_strategy="generated_code",
        implementation_details="import os\nresult = os.listdir('.')",
    )
    empty = await manager.construct_tool(
        name="z", implementation_strategy="generated_code", implementation_details=""
    )

    assert unknown["success"] is False
    assert unsafe["message"].startswith("Failed to compile tool code")
    assert empty["success"] is False
    assert manager.state.dynamic_tools == []
    assert manager.state.mutations == []


# ---- Execution errors ----
@pytest.mark.asyncio
async def test_runtime_and_input_errors_raise():
    manager = _manager()
    await manager.construct_tool(
        name="double",
        input_schema=NUMBER_SCHEMA,
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )
    await manager.construct_tool(
        name="broken",
        implementation_strategy="generated_code",
        implementation_details="def run(input):\n    return 1 / 0",
    )

    with pytest.raises(EffectApplicationError, match="Invalid input"):
        await manager.execute_dynamic_tool("double", {"value": "seven"})
    with pytest.raises(EffectApplicationError, match="is a required property"):
        await manager.execute_dynamic_tool("double", {})
    with pytest.raises(EffectApplicationError, match="ZeroDivisionError"):
        await manager.execute_dynamic_tool("broken", {})
    with pytest.raises(EffectApplicationError, match="not found"):
        await manager.execute_dynamic_tool("missing", {})


@pytest.mark.asyncio
async def test_input_is_checked_against_the_full_schema():
    manager = _manager()
    await manager.construct_tool(
        name="tag",
        input_schema={
            "type": "object",
            "properties": {
                "mode": {"enum": ["fast", "slow"]},
                "items": {"type": "array", "items": {"type": "integer"}},
            },
            "additionalProperties": False,
        },
        implementation_strategy="generated_code",
        implementation_details="result = input['mode']",
    )

    with pytest.raises(EffectApplicationError, match="Invalid input") as exc_info:
        await manager.execute_dynamic_tool("tag", {"mode": "bogus", "items": ["x"], "extra": 1})

    message = str(exc_info.value)
    assert "mode: 'bogus' is not one of" in message
    assert "items.0: 'x' is not of type 'integer'" in message
    assert "Additional properties are not allowed" in message
    assert await manager.execute_dynamic_tool("tag", {"mode": "fast", "items": [1]}) == "fast"


@pytest.mark.asyncio
async def test_output_is_checked_against_output_schema():
    manager = _manager()
    await manager.construct_tool(
        name="double",
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
        output_schema={"type": "object", "required": ["doubled"]},
    )

    with pytest.raises(EffectApplicationError, match="Invalid output from 'double'"):
        await manager.execute_dynamic_tool("double", {"value": 2})


@pytest.mark.asyncio
async def test_invalid_schema_is_rejected_at_construction():
    manager = _manager()

    result = await manager.construct_tool(
        name="broken_schema",
        input_schema={"type": "not-a-type"},
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )

    assert result["success"] is False
    assert "Invalid input schema" in result["message"]
    assert manager.state.dynamic_tools == []


@pytest.mark.asyncio
async def test_generated_code_cannot_reach_engine_state():
    manager = _manager()
    manager.state.context["Vault"] = {"secret": 1}

    result = await manager.construct_tool(
        name="escape",
        implementation_strategy="generated_code",
        implementation_details=(
            "g = (g.gi_frame.f_back for _ in [1])\n"
            "result = next(g)"
        ),
    )

    assert result["success"] is False
    assert manager.state.context == {"Vault": {"secret": 1}}


@pytest.mark.asyncio
async def test_agent_backed_tool_uses_oracle():
    oracle = FakeOracle()
    manager = _manager(oracle=oracle)
    await manager.construct_tool(
        name="summarize",
        implementation_strategy="agent_backed",
        implementation_details="Summarize the text",
    )

    result = await manager.execute_dynamic_tool("summarize", {"text": "long story"})

    assert result == {"summary": "Summarize the text: long story"}
    assert oracle.tool_calls == [("summarize", "Summarize the text", {"text": "long story"})]


@pytest.mark.asyncio
async def test_agent_backed_tool_without_oracle_fails():
    manager = _manager()
    await manager.construct_tool(name="summarize", implementation_details="Summarize")

    with pytest.raises(EffectApplicationError, match="no oracle"):
        await manager.execute_dynamic_tool("summarize", {})


@pytest.mark.asyncio
async def test_composition_chains_tools():
    manager = _manager()
    await manager.construct_tool(
        name="double",
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )
    await manager.construct_tool(
        name="increment",
        implementation_strategy="generated_code",
        implementation_details="def run(input):\n    return {'value': input['value'] + 1}",
    )

    result = await manager.construct_tool(
        name="double_then_increment",
        implementation_strategy="composition",
        implementation_details=json.dumps({"steps": ["double", "increment"]}),
    )

    assert result["success"] is True
    assert await manager.execute_dynamic_tool("double_then_increment", {"value": 5}) == {
        "value": 11
    }


@pytest.mark.asyncio
async def test_composition_with_unknown_step_fails():
    manager = _manager()

    result = await manager.construct_tool(
        name="pipeline",
        implementation_strategy="composition",
        implementation_details=["missing_tool"],
    )

    assert result["success"] is False
    assert "missing_tool" in result["message"]


def test_parse_composition_shapes():
    assert parse_composition(["a", "b"]) == ["a", "b"]
    assert parse_composition('{"tools": [{"tool": "a"}, {"name": "b"}]}') == ["a", "b"]
    with pytest.raises(ValueError):
        parse_composition([])
    with pytest.raises(ValueError):
        parse_composition("not json")


# ---- Machine definition ----
def _machine_dict(extra_nodes=()):
    return {
        "title": "Writer v2",
        "nodes": [
            {"name": "Start", "type": "state"},
            {"name": "Draft", "type": "task"},
            {"name": "Done", "type": "state"},
            *extra_nodes,
        ],
        "edges": [{"source": "Start", "target": "Draft"}, {"source": "Draft", "target": "Done"}],
    }


@pytest.mark.asyncio
async def test_update_definition_swaps_snapshot_and_notifies():
    updates = []
    manager = _manager(
        dsl_serializer=lambda machine: f"machine {machine['title']!r}",
        on_machine_update=lambda dsl, snapshot: updates.append((dsl, snapshot.title)),
    )

    result = await manager.update_definition(
        _machine_dict([{"name": "Review", "type": "task"}]), reason="add review"
    )

    assert result["success"] is True
    assert result["summary"] == {"title": "Writer v2", "nodes": 4, "edges": 2}
    assert manager.state.snapshot.get_node("Review") is not None
    assert updates == [("machine 'Writer v2'", "Writer v2")]

    record = manager.state.mutations[-1]
    assert record.type == "machine_updated"
    assert record.payload["reason"] == "add review"
    assert record.payload["machine"]["nodeCount"] == 4


@pytest.mark.asyncio
async def test_invalid_update_is_rejected_without_changes():
    manager = _manager()
    original = manager.state.snapshot

    result = await manager.update_definition(
        {"nodes": [{"name": "A"}], "edges": [{"source": "A", "target": "Missing"}]}
    )

    assert result["success"] is False
    assert any("Missing" in e for e in result["errors"])
    assert manager.state.snapshot is original
    assert manager.state.mutations == []


@pytest.mark.asyncio
async def test_update_removing_live_node_is_rejected():
    manager = _manager(state=_state(path_at="Review", extra_nodes=[MachineNode(name="Review")]))

    result = await manager.update_definition(_machine_dict())

    assert result["success"] is False
    assert any("path_0" in e for e in result["errors"])


@pytest.mark.asyncio
async def test_update_ignores_terminal_paths():
    state = _state(path_at="Review", extra_nodes=[MachineNode(name="Review")])
    state.paths[0].status = PathStatus.COMPLETED

    result = await MetaToolManager(state).update_definition(_machine_dict())

    assert result["success"] is True


@pytest.mark.asyncio
async def test_add_node_and_edge():
    manager = _manager()

    node = await manager.add_node("Review", type="task", attributes={"prompt": "Check it"})
    edge = await manager.add_edge("Draft", "Review", label="needs review")
    duplicate = await manager.add_node("Review")
    dangling = await manager.add_edge("Review", "Nowhere")

    assert node["success"] and edge["success"]
    assert duplicate["success"] is False
    assert dangling["success"] is False
    snapshot = manager.state.snapshot
    assert snapshot.get_node("Review").get_attr("prompt") == "Check it"
    assert any(e.target == "Review" and e.label == "needs review" for e in snapshot.edges)
    assert [m.type for m in manager.state.mutations] == ["node_added", "edge_added"]


@pytest.mark.asyncio
async def test_failing_update_callback_keeps_mutation_and_reports_success():
    def broken_storage(dsl, snapshot):
        raise OSError("disk full")

    manager = _manager(on_machine_update=broken_storage)

    result = await manager.add_node("Extra", type="task")

    assert result["success"] is True
    assert manager.state.snapshot.get_node("Extra") is not None
    assert [m.type for m in manager.state.mutations] == ["node_added"]


@pytest.mark.asyncio
async def test_get_machine_definition_formats():
    manager = _manager()

    both = await manager.get_machine_definition()
    only_json = await manager.get_machine_definition(format="json")

    assert both["json"]["title"] == "Writer"
    assert both["dsl"] is None
    assert "dsl" not in only_json


# ---- Proposals / tool nodes ----
@pytest.mark.asyncio
async def test_propose_tool_improvement():
    manager = _manager()
    await manager.construct_tool(name="helper", implementation_details="Help")

    result = await manager.propose_tool_improvement("helper", "too vague", "add schema")
    missing = await manager.propose_tool_improvement("ghost", "x", "y")

    assert result["proposalCount"] == 1
    assert manager.state.proposals[0].tool_name == "helper"
    assert manager.state.mutations[-1].type == "tool_improvement_proposed"
    assert missing["success"] is False


def _tool_node_state():
    return _state(
        extra_nodes=[
            MachineNode(
                name="summarizer",
                type="tool",
                attributes=[Attribute(name="description", value="Summarize text")],
            ),
            MachineNode(
                name="adder",
                type="tool",
                attributes=[
                    Attribute(name="code", value="result = input['a'] + input['b']"),
                    Attribute(
                        name="input_schema",
                        value='{"type": "object", "required": ["a", "b"]}',
                    ),
                ],
            ),
        ]
    )


@pytest.mark.asyncio
async def test_get_tool_nodes():
    manager = _manager(state=_tool_node_state())

    result = await manager.get_tool_nodes(include_registered=True)

    assert [t["name"] for t in result["tools"]] == ["summarizer", "adder"]
    assert all(t["isLooselyDefined"] for t in result["tools"])
    assert result["tools"][1]["attributes"]["input_schema"]["required"] == ["a", "b"]
    assert result["tools"][0]["isRegistered"] is False


@pytest.mark.asyncio
async def test_build_tool_from_node_defaults_to_agent_backed():
    oracle = FakeOracle()
    manager = _manager(state=_tool_node_state(), oracle=oracle)

    result = await manager.build_tool_from_node("summarizer")

    assert result["success"] is True
    definition = manager.get_definition("summarizer")
    assert definition.strategy == DynamicToolStrategy.AGENT_BACKED
    assert definition.origin == "tool_node"
    assert definition.implementation == "Summarize text"


@pytest.mark.asyncio
async def test_build_tool_from_node_infers_generated_code():
    manager = _manager(state=_tool_node_state())

    result = await manager.build_tool_from_node("adder")

    assert result["success"] is True
    assert manager.get_definition("adder").strategy == DynamicToolStrategy.GENERATED_CODE
    assert await manager.execute_dynamic_tool("adder", {"a": 2, "b": 3}) == 5
    with pytest.raises(EffectApplicationError):
        await manager.execute_dynamic_tool("adder", {"a": 2})


@pytest.mark.asyncio
async def test_build_tool_from_missing_or_registered_node_fails():
    manager = _manager(state=_tool_node_state())
    await manager.build_tool_from_node("adder")

    assert (await manager.build_tool_from_node("ghost"))["success"] is False
    assert (await manager.build_tool_from_node("adder"))["success"] is False


@pytest.mark.asyncio
async def test_persist_tool_writes_tool_node():
    manager = _manager()
    await manager.construct_tool(
        name="double",
        description="Double a number",
        input_schema=NUMBER_SCHEMA,
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )

    result = manager.persist_tool("double")

    assert result["success"] is True
    node = manager.state.snapshot.get_node("double")
    assert node.kind == "tool"
    assert node.get_attr("strategy") == "generated_code"
    assert node.get_attr("input_schema") == NUMBER_SCHEMA
    assert manager.persist_tool("ghost")["success"] is False


@pytest.mark.asyncio
async def test_persisted_tools_rebuild_from_their_nodes():
    oracle = FakeOracle()
    manager = _manager(oracle=oracle)
    await manager.construct_tool(
        name="double",
        input_schema=NUMBER_SCHEMA,
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )
    await manager.construct_tool(
        name="quad",
        implementation_strategy="composition",
        implementation_details=["double", "double"],
    )
    await manager.construct_tool(
        name="summarize",
        implementation_strategy="agent_backed",
        implementation_details="Summarize the text",
    )
    for name in ("double", "quad", "summarize"):
        assert manager.persist_tool(name)["success"] is True

    state = manager.state.model_copy(deep=True)
    state.dynamic_tools = []
    fresh = MetaToolManager(state, oracle=oracle)

    for name in ("double", "quad", "summarize"):
        assert (await fresh.build_tool_from_node(name))["success"] is True

    assert fresh.get_definition("quad").strategy == DynamicToolStrategy.COMPOSITION
    assert await fresh.execute_dynamic_tool("quad", {"value": 3}) == {"value": 12}
    assert fresh.get_definition("summarize").implementation == "Summarize the text"


# ---- Dispatch ----
@pytest.mark.asyncio
async def test_handle_dispatches_and_reports_bad_arguments():
    manager = _manager()

    listing = await manager.handle("list_available_tools", {})
    bad = await manager.handle("add_edge", {"source": "Draft"})

    assert "metaTools" in listing
    assert bad["success"] is False
    assert "Invalid arguments" in bad["message"]
    with pytest.raises(EffectApplicationError):
        await manager.handle("not_a_meta_tool", {})


@pytest.mark.asyncio
async def test_bind_rebuilds_dynamic_tools():
    manager = _manager()
    await manager.construct_tool(
        name="double",
        implementation_strategy="generated_code",
        implementation_details=DOUBLE_CODE,
    )
    restored = manager.state.model_copy(deep=True)

    fresh = MetaToolManager(_state())
    fresh.bind(restored)

    assert await fresh.execute_dynamic_tool("double", {"value": 4}) == {"value": 8}
