"""
LLM-backed oracle.

Renders a DecisionRequest into a single completion call and parses the
model's JSON answer back into a ToolUse. Any LLMProvider works; the
blocking complete() call runs in a worker thread so paths stepping in
the same event loop are not stalled.
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from dygram.config import RuntimeConfig
from dygram.errors import OracleInvocationError
from dygram.llm.provider import DecisionRequest, LLMProvider, Oracle, ToolUse

logger = logging.getLogger(__name__)

DECISION_INSTRUCTIONS = """Choose exactly ONE of the tools listed below.

**Tools**:
{tools}

Respond with ONLY a JSON object:
{{"tool": "<tool name>", "input": {{...arguments...}}}}
If none of the tools can make progress, respond with {{"tool": null}}."""


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first decodable JSON object embedded in text."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


class LLMOracle(Oracle):
    """
    Oracle adapter over an LLMProvider.

    Example:
        oracle = LLMOracle(provider, RuntimeConfig(max_tokens=512))
        executor = MachineExecutor(snapshot, oracle=oracle)
    """

    def __init__(self, provider: LLMProvider, config: RuntimeConfig | None = None):
        self.provider = provider
        self.config = config or RuntimeConfig()

    async def decide(self, request: DecisionRequest) -> ToolUse | None:
        tools_json = json.dumps([t.to_dict() for t in request.tools], indent=2)
        messages = list(request.conversation)
        messages.append(
            {"role": "user", "content": DECISION_INSTRUCTIONS.format(tools=tools_json)}
        )

        logger.info(
            f"      🤔 Asking oracle at '{request.node}' ({len(request.tools)} tools offered)"
        )
        content = await self._complete(messages, request.system_prompt)

        data = extract_json_object(content)
        if data is None:
            raise OracleInvocationError(
                f"Oracle response for '{request.node}' contained no JSON object"
            )

        name = data.get("tool") or data.get("name")
        if not name:
            logger.info(f"      ⚠ Oracle declined to choose at '{request.node}'")
            return None

        tool_input = data.get("input") or data.get("arguments") or {}
        if not isinstance(tool_input, dict):
            raise OracleInvocationError(f"Arguments for '{name}' must be a JSON object")

        return ToolUse(id=f"call_{uuid.uuid4().hex[:12]}", name=name, input=tool_input)

    async def run_tool(self, name: str, instructions: str, tool_input: dict[str, Any]) -> Any:
        prompt = (
            f"You are executing the tool '{name}'.\n\n"
            f"**Instructions**:\n{instructions}\n\n"
            f"**Input**:\n{json.dumps(tool_input, default=str)}\n\n"
            "Respond with ONLY a JSON object holding the tool's result."
        )
        content = await self._complete(
            [{"role": "user", "content": prompt}],
            "You are a tool implementation. Respond with JSON only.",
        )
        data = extract_json_object(content)
        if data is None:
            return {"result": content.strip()}
        return data

    async def _complete(self, messages: list[dict[str, Any]], system: str) -> str:
        try:
            response = await asyncio.to_thread(
                self.provider.complete,
                messages=messages,
                system=system,
                max_tokens=self.config.max_tokens,
                json_mode=True,
            )
        except Exception as e:
            raise OracleInvocationError(f"LLM call failed: {e}") from e
        return response.content or ""
