"""LLM Provider abstraction and the oracle contract the executor decides through."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from dygram.errors import OracleInvocationError


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


@dataclass
class Tool:
    """A tool the oracle can choose."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class ToolUse:
    """A tool call requested by the oracle."""

    id: str
    name: str
    input: dict[str, Any]


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any LLM backend.

    Implementations should handle:
    - API authentication
    - Request/response formatting
    - Token counting
    - Error handling
    """

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
        response_format: dict[str, Any] | None = None,
        json_mode: bool = False,
        max_retries: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history [{role: "user"|"assistant", content: str}]
            system: System prompt
            tools: Available tools for the LLM to use
            max_tokens: Maximum tokens to generate
            response_format: Optional structured output format, e.g.
                {"type": "json_object"}
            json_mode: If True, request structured JSON output from the LLM
            max_retries: Override retry count. None uses the provider default.

        Returns:
            LLMResponse with content and metadata
        """
        pass


@dataclass
class DecisionRequest:
    """Everything the oracle sees when a path reaches a decision point."""

    run_id: str
    path_id: str
    node: str
    system_prompt: str
    tools: list[Tool]
    contexts: list[dict[str, Any]] = field(default_factory=list)
    transitions: list[dict[str, Any]] = field(default_factory=list)
    conversation: list[dict[str, Any]] = field(default_factory=list)

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]


class Oracle(ABC):
    """
    External decision-maker selecting one tool per decision point.

    The executor never assumes how a decision is produced: an LLM, a
    scripted test double, or a human behind a queue all fit.
    """

    @abstractmethod
    async def decide(self, request: DecisionRequest) -> ToolUse | None:
        """
        Pick exactly one tool invocation.

        Returns:
            The chosen ToolUse, or None if the oracle cannot proceed
        """
        pass

    async def run_tool(self, name: str, instructions: str, tool_input: dict[str, Any]) -> Any:
        """
        Answer an agent-backed dynamic tool call.

        Default implementation refuses; oracles that back dynamic tools override it.

        Raises:
            OracleInvocationError: Always, unless overridden
        """
        raise OracleInvocationError(f"Oracle cannot run agent-backed tool '{name}'")
