"""LiteLLM-backed provider: one LLMProvider for every backend LiteLLM routes to."""

import logging
from typing import Any

import litellm

from dygram.config import RuntimeConfig
from dygram.llm.provider import LLMProvider, LLMResponse, Tool

logger = logging.getLogger(__name__)


def _to_openai_tool(tool: Tool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters or {"type": "object", "properties": {}},
        },
    }


class LiteLLMProvider(LLMProvider):
    """
    Provider over litellm.completion.

    Example:
        provider = LiteLLMProvider(model="anthropic/claude-sonnet-4-20250514")
        oracle = LLMOracle(provider)
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = 0.2,
        max_retries: int = 2,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.max_retries = max_retries

    @classmethod
    def from_config(cls, config: RuntimeConfig | None = None) -> "LiteLLMProvider":
        """Build a provider from ~/.dygram/configuration.json settings."""
        config = config or RuntimeConfig()
        return cls(
            model=config.model,
            api_key=config.api_key,
            api_base=config.api_base,
            temperature=config.temperature,
        )

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
        full_messages = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "num_retries": self.max_retries if max_retries is None else max_retries,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if tools:
            kwargs["tools"] = [_to_openai_tool(t) for t in tools]
        if response_format is not None:
            kwargs["response_format"] = response_format
        elif json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        logger.debug(f"LLM call: {self.model} ({len(full_messages)} messages)")
        response = litellm.completion(**kwargs)

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", None) or self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )
