"""
Tests for the execution state schema, its serialization and checkpoints.
"""

import json

import pytest

from dygram.errors import ConfigurationError
from dygram.graph.machine import MachineEdge, MachineNode, MachineSnapshot
from dygram.schemas.checkpoint import Checkpoint
from dygram.schemas.execution import (
    EXECUTION_STATE_VERSION,
    DynamicToolDefinition,
    DynamicToolStrategy,
    ExecutionPath,
    ExecutionState,
    PathStatus,
    ResourceLimits,
    Transition,
    TransitionKind,
    deserialize_state,
    path_sort_key,
    serialize_state,
)


def _state():
    snapshot = MachineSnapshot(
        title="Tiny",
        nodes=[MachineNode(name="A", type="state"), MachineNode(name="B", type="state")],
        edges=[MachineEdge(source="A", target="B")],
    )
    state = ExecutionState(snapshot=snapshot, run_id="run_1")
    path = ExecutionPath(id=state.new_path_id(), current_node="B", visit_counts={"A": 1, "B": 1})
    path.history.append(Transition(from_node="A", to_node="B", reason="go"))
    state.paths.append(path)
    state.context["results"] = {"score": 3}
    state.dynamic_tools.append(
        DynamicToolDefinition(name="echo", strategy=DynamicToolStrategy.AGENT_BACKED)
    )
    return state


# ---- Serialization ----
def test_serialize_round_trip_preserves_run():
    restored = deserialize_state(serialize_state(_state()))

    assert restored.run_id == "run_1"
    assert restored.snapshot.title == "Tiny"
    assert restored.paths[0].history[0].from_node == "A"
    assert restored.paths[0].history[0].kind == TransitionKind.AUTOMATIC
    assert restored.context == {"results": {"score": 3}}
    assert restored.dynamic_tools[0].strategy == DynamicToolStrategy.AGENT_BACKED
    assert restored.next_path_seq == 1


def test_transitions_serialize_with_from_and_to_keys():
    data = json.loads(serialize_state(_state()))
    assert data["version"] == EXECUTION_STATE_VERSION
    assert data["paths"][0]["history"][0]["from"] == "A"
    assert data["paths"][0]["history"][0]["to"] == "B"


def test_wrong_version_is_rejected():
    data = json.loads(serialize_state(_state()))
    data["version"] = "1.0.0"
    with pytest.raises(ConfigurationError, match="Unsupported execution state version"):
        deserialize_state(data)


def test_malformed_json_is_rejected():
    with pytest.raises(ConfigurationError, match="not valid JSON"):
        deserialize_state("{not json")


# ---- Paths ----
def test_path_ids_sort_numerically():
    paths = [ExecutionPath(id=f"path_{n}", current_node="A") for n in (10, 2, 1)]
    paths.append(ExecutionPath(id="custom", current_node="A"))
    assert [p.id for p in sorted(paths, key=path_sort_key)] == [
        "path_1",
        "path_2",
        "path_10",
        "custom",
    ]


def test_active_paths_are_ordered_and_filtered():
    state = _state()
    state.paths = [
        ExecutionPath(id="path_3", current_node="A"),
        ExecutionPath(id="path_1", current_node="A"),
        ExecutionPath(id="path_2", current_node="A", status=PathStatus.FAILED),
    ]

    assert [p.id for p in state.active_paths()] == ["path_1", "path_3"]
    assert state.has_live_paths()


def test_visited_sequence():
    path = ExecutionPath(id="path_0", current_node="A")
    assert path.visited_sequence() == ["A"]

    path.history.append(Transition(from_node="A", to_node="B"))
    path.history.append(Transition(from_node="B", to_node="A"))
    assert path.visited_sequence() == ["A", "B", "A"]


def test_strategy_parse_accepts_legacy_name():
    assert DynamicToolStrategy.parse("code_generation") == DynamicToolStrategy.GENERATED_CODE
    assert DynamicToolStrategy.parse(" Composition ") == DynamicToolStrategy.COMPOSITION
    with pytest.raises(ValueError):
        DynamicToolStrategy.parse("magic")


# ---- Limits ----
def test_limits_from_config_overlay(monkeypatch):
    monkeypatch.setattr(
        "dygram.schemas.execution.get_default_limits",
        lambda: {
            "max_steps": 50,
            "max_node_invocations": 5,
            "timeout_seconds": 10.0,
            "cycle_detection_window": 4,
        },
    )

    limits = ResourceLimits.from_config(max_steps=7, timeout_seconds=None)

    assert limits.max_steps == 7
    assert limits.max_node_invocations == 5
    assert limits.timeout_seconds == 10.0


# ---- Checkpoints ----
def test_checkpoint_holds_independent_copy():
    state = _state()
    state.step_count = 4

    checkpoint = Checkpoint.create(state, description="before update")
    state.context["results"]["score"] = 99
    state.paths[0].current_node = "A"

    assert checkpoint.checkpoint_id.startswith("cp_4_")
    assert checkpoint.active_nodes == ["B"]
    assert checkpoint.state.context["results"]["score"] == 3
    assert checkpoint.state.paths[0].current_node == "B"
