"""
Transition classification: which outgoing edges fire automatically and
which are left to the oracle.

Priority order, first match wins:
1. An edge annotated @auto (whose condition, if any, holds)
2. A state node (no prompt) with exactly one outgoing edge; init nodes
   and task nodes without a prompt follow the same rule
3. An edge with a simple when:/unless:/if: condition that holds, in
   declaration order
4. Everything else is agent-decided

Edges whose simple condition is false are blocked: they are neither
automatic nor offered to the oracle. Conditions that mention external
calls stay agent-decided.

Modules (state nodes with children) are never a resting position:
a transition into a module lands on its entry child, recursively. A node
with no outgoing transitions of its own exits through the nearest
ancestor that has some.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dygram.graph.conditions import evaluate_condition, extract_condition, is_simple_condition
from dygram.graph.machine import (
    MachineEdge,
    MachineSnapshot,
    has_prompt,
    is_context,
    is_executable,
    is_init,
    is_module,
    is_state,
    is_task,
)
from dygram.schemas.execution import TransitionKind

logger = logging.getLogger(__name__)


@dataclass
class CandidateTransition:
    """An outgoing edge considered from a given node."""

    edge: MachineEdge
    source: str  # Node whose edge this is (the node itself or an ancestor)
    target: str  # Declared target
    resolved_target: str  # Target after module entry resolution
    module_chain: list[str] = field(default_factory=list)
    condition: str | None = None
    inherited_from: str | None = None

    @property
    def description(self) -> str:
        return self.edge.text

    @property
    def is_async(self) -> bool:
        return self.edge.has_annotation("async")

    @property
    def is_auto(self) -> bool:
        return self.edge.has_annotation("auto")


@dataclass
class TransitionClassification:
    """Outcome of classifying a node's outgoing transitions."""

    node: str
    outgoing: list[CandidateTransition] = field(default_factory=list)
    automatic: CandidateTransition | None = None
    reason: str = ""
    agent_decided: list[CandidateTransition] = field(default_factory=list)

    @property
    def is_dead_end(self) -> bool:
        return self.automatic is None and not self.agent_decided

    @property
    def kind(self) -> TransitionKind | None:
        if self.automatic is not None:
            return TransitionKind.AUTOMATIC
        if self.agent_decided:
            return TransitionKind.AGENT
        return None


# ---------------------------------------------------------------------------
# Module entry / exit
# ---------------------------------------------------------------------------


def module_entry_child(snapshot: MachineSnapshot, module_name: str) -> str | None:
    """Entry child of a module: first task, then first state, then first non-context."""
    children = snapshot.children_of(module_name)
    if not children:
        return None

    for predicate in (is_task, is_state, lambda n: not is_context(n)):
        for child in children:
            if predicate(child):
                return child.name
    return children[0].name


def resolve_entry(snapshot: MachineSnapshot, target: str) -> tuple[str, list[str]]:
    """
    Resolve a transition target through nested module entries.

    Returns:
        (final node name, chain of modules entered on the way)
    """
    chain: list[str] = []
    current = target
    while True:
        node = snapshot.get_node(current)
        if node is None or not is_module(snapshot, node) or current in chain:
            return current, chain
        chain.append(current)
        logger.debug(f"→ Entering module '{current}'")
        child = module_entry_child(snapshot, current)
        if child is None:
            logger.warning(f"⚠ Module '{current}' has no children to enter")
            return current, chain
        current = child


def _transition_edges(snapshot: MachineSnapshot, node_name: str) -> list[MachineEdge]:
    """Outgoing edges that lead to executable nodes (context/tool links are access, not flow)."""
    edges = []
    for edge in snapshot.get_outgoing_edges(node_name):
        target = snapshot.get_node(edge.target)
        if target is not None and is_executable(target):
            edges.append(edge)
    return edges


def outgoing_transitions(snapshot: MachineSnapshot, node_name: str) -> list[CandidateTransition]:
    """
    Outgoing transitions for a node, applying module exit inheritance.

    Explicit edges on the node always win; only a node with none of its
    own inherits the exits of its nearest ancestor that has any.
    """
    source = node_name
    inherited_from = None
    edges = _transition_edges(snapshot, node_name)

    if not edges:
        for ancestor in snapshot.ancestors_of(node_name):
            ancestor_edges = _transition_edges(snapshot, ancestor.name)
            if ancestor_edges:
                edges = ancestor_edges
                source = ancestor.name
                inherited_from = ancestor.name
                break

    candidates = []
    for edge in edges:
        resolved, chain = resolve_entry(snapshot, edge.target)
        candidates.append(
            CandidateTransition(
                edge=edge,
                source=source,
                target=edge.target,
                resolved_target=resolved,
                module_chain=chain,
                condition=extract_condition(edge),
                inherited_from=inherited_from,
            )
        )
    return candidates


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_transitions(
    snapshot: MachineSnapshot,
    node_name: str,
    scope: Mapping[str, Any],
) -> TransitionClassification:
    """
    Split a node's outgoing transitions into automatic vs. agent-decided.

    Args:
        snapshot: Snapshot the step runs against
        node_name: Current node of the path
        scope: Condition scope (see build_condition_scope)

    Returns:
        TransitionClassification with at most one automatic transition
    """
    result = TransitionClassification(node=node_name)
    node = snapshot.get_node(node_name)
    if node is None:
        return result

    result.outgoing = outgoing_transitions(snapshot, node_name)
    if not result.outgoing:
        return result

    def holds(candidate: CandidateTransition) -> bool:
        return evaluate_condition(candidate.condition, scope)

    # 1. @auto edges
    for candidate in result.outgoing:
        if candidate.is_auto and holds(candidate):
            result.automatic = candidate
            result.reason = "@auto annotation"
            return result

    # 2. Single edge from a state / init node, or a task without a prompt
    if len(result.outgoing) == 1 and not has_prompt(node):
        reason = None
        if is_state(node):
            reason = "Single edge from state node"
        elif is_init(node):
            reason = "Single edge from init node"
        elif is_task(node):
            reason = "Single edge from task node without prompt"
        if reason and holds(result.outgoing[0]):
            result.automatic = result.outgoing[0]
            result.reason = reason
            return result

    # 3. Simple deterministic conditions
    for candidate in result.outgoing:
        if candidate.condition and is_simple_condition(candidate.condition) and holds(candidate):
            result.automatic = candidate
            result.reason = f"Condition satisfied: {candidate.condition}"
            return result

    # 4. Agent-decided: drop @auto edges and blocked simple conditions
    for candidate in result.outgoing:
        if candidate.is_auto:
            continue
        if candidate.condition and is_simple_condition(candidate.condition):
            continue
        result.agent_decided.append(candidate)

    return result


def describe_transitions(classification: TransitionClassification) -> list[dict[str, Any]]:
    """Plain-dict rendering used by visualization and prompts."""
    entries = []
    if classification.automatic is not None:
        entries.append(_describe(classification.automatic, TransitionKind.AUTOMATIC))
    for candidate in classification.agent_decided:
        entries.append(_describe(candidate, TransitionKind.AGENT))
    return entries


def _describe(candidate: CandidateTransition, kind: TransitionKind) -> dict[str, Any]:
    return {
        "target": candidate.target,
        "resolvedTarget": candidate.resolved_target,
        "kind": str(kind),
        "description": candidate.description,
        "condition": candidate.condition,
        "async": candidate.is_async,
        "inheritedFrom": candidate.inherited_from,
    }
