"""Machine graph: snapshot model, conditions, permissions, transitions, and execution."""

from dygram.graph.code_sandbox import CodeSandbox, SandboxViolation, safe_exec
from dygram.graph.conditions import build_condition_scope, evaluate_condition, extract_condition
from dygram.graph.executor import (
    ExecutionResult,
    MachineExecutor,
    PathStepResult,
    StepResult,
    create_initial_state,
    determine_initial_nodes,
    get_path_statistics,
    get_visualization_state,
)
from dygram.graph.machine import (
    Annotation,
    Attribute,
    MachineEdge,
    MachineNode,
    MachineSnapshot,
)
from dygram.graph.permissions import (
    ContextPermission,
    PermissionOptions,
    resolve_context_permissions,
)
from dygram.graph.safe_eval import safe_eval
from dygram.graph.tool_surface import Effect, EffectType, ToolSurface, build_tool_surface
from dygram.graph.transitions import (
    CandidateTransition,
    TransitionClassification,
    classify_transitions,
)
from dygram.graph.validator import MachineValidator, ValidationResult

__all__ = [
    # Snapshot
    "MachineSnapshot",
    "MachineNode",
    "MachineEdge",
    "Attribute",
    "Annotation",
    # Conditions
    "evaluate_condition",
    "extract_condition",
    "build_condition_scope",
    # Permissions
    "ContextPermission",
    "PermissionOptions",
    "resolve_context_permissions",
    # Transitions
    "CandidateTransition",
    "TransitionClassification",
    "classify_transitions",
    # Tool surface
    "Effect",
    "EffectType",
    "ToolSurface",
    "build_tool_surface",
    # Executor
    "MachineExecutor",
    "StepResult",
    "PathStepResult",
    "ExecutionResult",
    "create_initial_state",
    "determine_initial_nodes",
    "get_visualization_state",
    "get_path_statistics",
    # Validation
    "MachineValidator",
    "ValidationResult",
    # Code Sandbox
    "CodeSandbox",
    "SandboxViolation",
    "safe_exec",
    "safe_eval",
]
