"""LLM provider abstraction and the oracle contract."""

from dygram.llm.oracle import LLMOracle
from dygram.llm.provider import (
    DecisionRequest,
    LLMProvider,
    LLMResponse,
    Oracle,
    Tool,
    ToolUse,
)

__all__ = [
    "DecisionRequest",
    "LLMOracle",
    "LLMProvider",
    "LLMResponse",
    "Oracle",
    "Tool",
    "ToolUse",
]
