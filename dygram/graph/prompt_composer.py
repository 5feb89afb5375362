"""Prompt composition for decision points.

Composes the system prompt handed to the oracle when a path needs a
decision, and the transition markers appended to a path's conversation.

Layer 1: Identity (machine title and description, never changes)
Layer 2: Narrative (generated from the path's history)
Layer 3: Focus (the node's role: position, context, transitions, instructions)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dygram.graph.machine import MachineSnapshot
    from dygram.graph.permissions import ContextPermission
    from dygram.graph.transitions import TransitionClassification
    from dygram.schemas.execution import ExecutionPath

logger = logging.getLogger(__name__)

MAX_VALUE_CHARS = 200


def _clip(value: Any, limit: int = MAX_VALUE_CHARS) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def compose_system_prompt(
    identity_prompt: str | None,
    focus_prompt: str | None,
    narrative: str | None = None,
) -> str:
    """Compose the three-layer system prompt.

    Args:
        identity_prompt: Layer 1, the machine identity.
        focus_prompt: Layer 3, the current node's role description.
        narrative: Layer 2, generated from the path history.

    Returns:
        Composed system prompt with all present layers.
    """
    parts: list[str] = []

    if identity_prompt:
        parts.append(identity_prompt)

    if narrative:
        parts.append(f"\n--- Context (what has happened so far) ---\n{narrative}")

    if focus_prompt:
        parts.append(f"\n--- Current Focus ---\n{focus_prompt}")

    return "\n".join(parts) if parts else ""


def build_identity(snapshot: MachineSnapshot) -> str:
    title = snapshot.title or "Untitled machine"
    description = snapshot.machine_attrs().get("description")
    identity = f"You are the decision-maker for the state machine '{title}'."
    if description:
        identity += f"\n{description}"
    return identity


def build_narrative(path: ExecutionPath) -> str:
    """Build Layer 2 from the path's transition history.

    Deterministic, no oracle call.
    """
    if not path.history:
        return ""
    lines = []
    for transition in path.history[-10:]:
        line = f"- {transition.from_node} → {transition.to_node} ({transition.kind})"
        if transition.reason:
            line += f": {_clip(transition.reason, 120)}"
        lines.append(line)
    omitted = len(path.history) - len(lines)
    header = "Transitions so far"
    if omitted:
        header += f" (latest {len(lines)} of {len(path.history)})"
    return f"{header}:\n" + "\n".join(lines)


def build_context_summaries(
    snapshot: MachineSnapshot,
    permissions: Mapping[str, ContextPermission],
    shared_context: Mapping[str, Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Summaries of each accessible context: permissions plus readable values."""
    summaries = []
    for name, permission in permissions.items():
        node = snapshot.get_node(name)
        if node is None:
            continue
        values: dict[str, Any] = {}
        if permission.can_read:
            values = dict(node.attrs())
            values.update(shared_context.get(name, {}))
            values = {k: v for k, v in values.items() if permission.allows_field(k)}
        summaries.append(
            {
                "name": name,
                "permissions": permission.to_dict(),
                "values": values,
            }
        )
    return summaries


def build_role_description(
    snapshot: MachineSnapshot,
    node_name: str,
    path: ExecutionPath,
    classification: TransitionClassification,
    contexts: list[dict[str, Any]],
    meta: bool = False,
) -> str:
    """Layer 3: describe the node's role and everything the oracle may do from it."""
    node = snapshot.get_node(node_name)
    sections: list[str] = []

    sections.append("## Role")
    if node is not None:
        kind = node.kind or "node"
        sections.append(f"You are executing {kind} '{node.title or node.name}'.")
        prompt = node.get_attr("prompt")
        if prompt:
            sections.append(str(prompt))
        description = node.get_attr("description")
        if description:
            sections.append(str(description))
    else:
        logger.warning(f"⚠ Composing role for unknown node '{node_name}'")

    sections.append("\n## Current Position")
    sections.append(f"Path: {path.id}, node: {node_name}, step {path.step_count}")
    ancestors = snapshot.ancestors_of(node_name)
    if ancestors:
        sections.append("Inside module: " + " / ".join(a.name for a in reversed(ancestors)))

    sections.append("\n## Available Context")
    if contexts:
        for summary in contexts:
            granted = [
                verb
                for verb, key in (("read", "canRead"), ("write", "canWrite"), ("store", "canStore"))
                if summary["permissions"][key]
            ]
            line = f"- {summary['name']} ({', '.join(granted)})"
            fields = summary["permissions"]["fields"]
            if fields:
                line += f" fields: {', '.join(fields)}"
            sections.append(line)
            for key, value in summary["values"].items():
                sections.append(f"    {key}: {_clip(value)}")
    else:
        sections.append("(none)")

    sections.append("\n## Available Transitions")
    if classification.agent_decided:
        for candidate in classification.agent_decided:
            line = f"- {candidate.target}"
            if candidate.description:
                line += f": {candidate.description}"
            if candidate.is_async:
                line += " [async]"
            sections.append(line)
    else:
        sections.append("(none)")

    if meta:
        sections.append("\n## Meta-Programming")
        sections.append(
            "You may inspect and modify this machine and construct new tools. "
            "Changes take effect from the next step."
        )

    sections.append("\n## Instructions")
    sections.append(
        "Call exactly one tool. Use a transition tool to move on once the work "
        "at this node is done."
    )

    return "\n".join(sections)


def build_transition_marker(from_node: str, to_node: str, reason: str = "") -> dict[str, Any]:
    """Conversation entry marking a path moving between nodes."""
    text = f"--- TRANSITION: {from_node} → {to_node} ---"
    if reason:
        text += f"\nReason: {reason}"
    return {"role": "user", "content": text}
