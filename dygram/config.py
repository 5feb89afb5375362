"""Shared DyGram configuration utilities.

Centralises reading of ~/.dygram/configuration.json so that the executor,
the oracle adapter and tests share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DYGRAM_CONFIG_FILE = Path.home() / ".dygram" / "configuration.json"

DEFAULT_MAX_STEPS = 1000
DEFAULT_MAX_NODE_INVOCATIONS = 100
DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_CYCLE_DETECTION_WINDOW = 20
DEFAULT_MAX_TOKENS = 1024


def get_dygram_config() -> dict[str, Any]:
    """Load configuration from ~/.dygram/configuration.json."""
    if not DYGRAM_CONFIG_FILE.exists():
        return {}
    try:
        with open(DYGRAM_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_limits() -> dict[str, Any]:
    """Return execution limits, overlaying the "limits" config section on the defaults."""
    configured = get_dygram_config().get("limits", {})
    return {
        "max_steps": configured.get("max_steps", DEFAULT_MAX_STEPS),
        "max_node_invocations": configured.get(
            "max_node_invocations", DEFAULT_MAX_NODE_INVOCATIONS
        ),
        "timeout_seconds": configured.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
        "cycle_detection_window": configured.get(
            "cycle_detection_window", DEFAULT_CYCLE_DETECTION_WINDOW
        ),
    }


def get_preferred_model() -> str:
    """Return the user's preferred model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    llm = get_dygram_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return "anthropic/claude-sonnet-4-20250514"


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_dygram_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable specified in configuration."""
    llm = get_dygram_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


# ---------------------------------------------------------------------------
# RuntimeConfig – settings for the LLM-backed oracle
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Oracle runtime configuration loaded from ~/.dygram/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.2
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None
