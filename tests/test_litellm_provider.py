"""
Tests for the LiteLLM-backed provider.
"""

from unittest.mock import MagicMock, patch

from dygram.config import RuntimeConfig
from dygram.llm.litellm import LiteLLMProvider
from dygram.llm.provider import Tool


def _completion(content='{"tool": null}', finish_reason="stop"):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.choices[0].finish_reason = finish_reason
    response.usage.prompt_tokens = 12
    response.usage.completion_tokens = 3
    response.model = "test-model"
    return response


def test_complete_builds_request_and_response():
    provider = LiteLLMProvider(model="test/model", api_key="sk-test", temperature=0.0)

    with patch("dygram.llm.litellm.litellm.completion", return_value=_completion()) as completion:
        response = provider.complete(
            messages=[{"role": "user", "content": "pick"}],
            system="You decide.",
            max_tokens=64,
            json_mode=True,
        )

    kwargs = completion.call_args.kwargs
    assert kwargs["model"] == "test/model"
    assert kwargs["messages"][0] == {"role": "system", "content": "You decide."}
    assert kwargs["messages"][1]["content"] == "pick"
    assert kwargs["max_tokens"] == 64
    assert kwargs["api_key"] == "sk-test"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "api_base" not in kwargs

    assert response.content == '{"tool": null}'
    assert response.input_tokens == 12
    assert response.output_tokens == 3
    assert response.stop_reason == "stop"


def test_tools_are_sent_in_function_format():
    provider = LiteLLMProvider(model="test/model")
    tool = Tool(name="transition_to_Done", description="Finish", parameters={"type": "object"})

    with patch("dygram.llm.litellm.litellm.completion", return_value=_completion()) as completion:
        provider.complete(messages=[], tools=[tool], max_retries=0)

    kwargs = completion.call_args.kwargs
    assert kwargs["tools"][0]["function"]["name"] == "transition_to_Done"
    assert kwargs["num_retries"] == 0
    assert "response_format" not in kwargs


def test_from_config():
    config = RuntimeConfig(
        model="anthropic/claude-test", temperature=0.5, api_key="k", api_base="http://proxy"
    )

    provider = LiteLLMProvider.from_config(config)

    assert provider.model == "anthropic/claude-test"
    assert provider.api_base == "http://proxy"
    assert provider.temperature == 0.5
