"""
Execution State Schema - everything a run needs to be inspected or resumed.

The executor threads one ExecutionState value through every operation;
nothing about a run lives in module globals. The whole state serializes
to JSON (see serialize_state) with a version tag so persisted runs can be
rejected when the format changes.
"""

import json
import time
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from dygram.config import get_default_limits
from dygram.errors import ConfigurationError
from dygram.graph.machine import MachineSnapshot

EXECUTION_STATE_VERSION = "2.0.0"


class PathStatus(StrEnum):
    """Lifecycle of one execution path."""

    ACTIVE = "active"
    WAITING = "waiting"  # Parent blocked on spawned children
    COMPLETED = "completed"
    FAILED = "failed"


class TransitionKind(StrEnum):
    AUTOMATIC = "automatic"
    AGENT = "agent"
    PASS_THROUGH = "pass_through"


class DynamicToolStrategy(StrEnum):
    AGENT_BACKED = "agent_backed"
    GENERATED_CODE = "generated_code"
    COMPOSITION = "composition"

    @classmethod
    def parse(cls, value: str) -> "DynamicToolStrategy":
        """Accept the strategy name, including the older "code_generation" spelling."""
        normalized = (value or "").strip().lower()
        if normalized == "code_generation":
            return cls.GENERATED_CODE
        return cls(normalized)


class Transition(BaseModel):
    """One recorded move of a path."""

    from_node: str = Field(alias="from")
    to_node: str = Field(alias="to")
    kind: TransitionKind = TransitionKind.AUTOMATIC
    reason: str = ""
    via_modules: list[str] = Field(default_factory=list)  # Module chain entered
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"extra": "allow", "populate_by_name": True}


class ExecutionPath(BaseModel):
    """One independent cursor advancing through the machine."""

    id: str
    current_node: str
    status: PathStatus = PathStatus.ACTIVE
    step_count: int = 0

    # Incremented each time a step executes at a node (limit enforcement)
    node_invocation_counts: dict[str, int] = Field(default_factory=dict)
    # Incremented on every arrival at a node, starting node included
    visit_counts: dict[str, int] = Field(default_factory=dict)

    history: list[Transition] = Field(default_factory=list)
    start_time: float = Field(default_factory=time.time)

    # Async spawn bookkeeping
    parent_path_id: str | None = None
    awaiting: list[str] = Field(default_factory=list)

    # Oracle conversation for this path (tool calls and results)
    conversation: list[dict[str, Any]] = Field(default_factory=list)

    error: str | None = None
    error_type: str | None = None

    model_config = {"extra": "allow"}

    @property
    def is_terminal(self) -> bool:
        return self.status in (PathStatus.COMPLETED, PathStatus.FAILED)

    def visited_sequence(self) -> list[str]:
        """Node positions of the path in order: starting node, then each arrival."""
        if not self.history:
            return [self.current_node]
        return [self.history[0].from_node] + [t.to_node for t in self.history]


class ResourceLimits(BaseModel):
    """Execution bounds. A breach halts only the offending path."""

    max_steps: int = Field(default=1000, description="Steps per path")
    max_node_invocations: int = Field(default=100, description="Steps at one node per path")
    timeout_seconds: float = Field(default=300.0, description="Wall clock from run start")
    cycle_detection_window: int = Field(default=20, description="Recent transitions examined")

    @classmethod
    def from_config(cls, **overrides: Any) -> "ResourceLimits":
        """Defaults overlaid with ~/.dygram/configuration.json and explicit overrides."""
        values = get_default_limits()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class MutationRecord(BaseModel):
    """Append-only audit entry for one meta mutation."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class ToolImprovementProposal(BaseModel):
    tool_name: str
    rationale: str
    proposed_changes: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class DynamicToolDefinition(BaseModel):
    """Serializable half of a dynamic tool; the handler is rebuilt from it."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    output_schema: dict[str, Any] | None = None
    strategy: DynamicToolStrategy
    implementation: Any = None  # instructions, source code, or list of tool names
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    origin: str = "construct_tool"  # or "tool_node"


class ExecutionState(BaseModel):
    """
    Aggregate record of a run: paths, shared context, counters, audit log.

    The snapshot stored here is the live machine definition; each step
    captures it once and runs every path against that captured value.
    """

    version: str = EXECUTION_STATE_VERSION
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    snapshot: MachineSnapshot
    paths: list[ExecutionPath] = Field(default_factory=list)

    # Shared context store: context node -> attribute -> value
    context: dict[str, dict[str, Any]] = Field(default_factory=dict)

    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    step_count: int = 0
    error_count: int = 0
    started_at: float = Field(default_factory=time.time)
    next_path_seq: int = 0

    mutations: list[MutationRecord] = Field(default_factory=list)
    proposals: list[ToolImprovementProposal] = Field(default_factory=list)
    dynamic_tools: list[DynamicToolDefinition] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_path(self, path_id: str) -> ExecutionPath | None:
        for path in self.paths:
            if path.id == path_id:
                return path
        return None

    def paths_with_status(self, *statuses: PathStatus) -> list[ExecutionPath]:
        return [p for p in self.paths if p.status in statuses]

    def active_paths(self) -> list[ExecutionPath]:
        """Active paths in deterministic path-id order."""
        return sorted(self.paths_with_status(PathStatus.ACTIVE), key=path_sort_key)

    def has_live_paths(self) -> bool:
        return any(not p.is_terminal for p in self.paths)

    def new_path_id(self) -> str:
        path_id = f"path_{self.next_path_seq}"
        self.next_path_seq += 1
        return path_id


def path_sort_key(path: ExecutionPath) -> tuple[int, str]:
    """Order path_<n> ids numerically, anything else after them by name."""
    prefix, _, number = path.id.rpartition("_")
    if prefix == "path" and number.isdigit():
        return (int(number), path.id)
    return (1 << 30, path.id)


def serialize_state(state: ExecutionState) -> str:
    """Serialize an execution state to JSON."""
    return state.model_dump_json(by_alias=True)


def deserialize_state(data: str | dict[str, Any]) -> ExecutionState:
    """
    Restore an execution state from JSON (string or decoded dict).

    Raises:
        ConfigurationError: If the payload is malformed or from another format version
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Execution state is not valid JSON: {e}") from e

    version = data.get("version")
    if version != EXECUTION_STATE_VERSION:
        raise ConfigurationError(
            f"Unsupported execution state version {version!r} "
            f"(expected {EXECUTION_STATE_VERSION})"
        )
    return ExecutionState.model_validate(data)
