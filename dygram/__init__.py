"""DyGram execution engine: multi-path scheduling over self-modifying state machines."""

from dygram.errors import (
    ConditionEvaluationError,
    ConfigurationError,
    DygramError,
    EffectApplicationError,
    MutationValidationError,
    OracleInvocationError,
    ResourceLimitExceeded,
)
from dygram.graph.executor import ExecutionResult, MachineExecutor, PathStepResult, StepResult
from dygram.graph.machine import Annotation, Attribute, MachineEdge, MachineNode, MachineSnapshot
from dygram.llm.provider import DecisionRequest, Oracle, ToolUse
from dygram.schemas.execution import ExecutionState, PathStatus, ResourceLimits

__all__ = [
    # Machine
    "MachineSnapshot",
    "MachineNode",
    "MachineEdge",
    "Attribute",
    "Annotation",
    # Execution
    "MachineExecutor",
    "StepResult",
    "PathStepResult",
    "ExecutionResult",
    "ExecutionState",
    "PathStatus",
    "ResourceLimits",
    # Oracle
    "Oracle",
    "DecisionRequest",
    "ToolUse",
    # Errors
    "DygramError",
    "ConfigurationError",
    "ConditionEvaluationError",
    "ResourceLimitExceeded",
    "EffectApplicationError",
    "OracleInvocationError",
    "MutationValidationError",
]
