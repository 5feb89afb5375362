"""
Machine Snapshot - the structural graph a machine executes against.

A snapshot is produced by an external parser (or by update_definition at
runtime) and is never edited in place: a machine update builds a new
snapshot and swaps it in between steps.

Nodes carry a free-form kind tag (state, task, context, tool, ...),
an optional parent for nesting, ordered attributes and annotations.
Edges connect a source to one or more targets and may carry a label
directive ("when: ...", "reads", "write: a,b").
"""

import json
from typing import Any

from pydantic import BaseModel, Field

# Kinds that never execute as a path position
NON_EXECUTABLE_KINDS = frozenset({"context", "tool", "note", "style"})

CONTEXT_KINDS = frozenset({"context", "concept", "input", "result"})
CONTEXT_NAME_HINTS = ("context", "output", "input", "data", "result")


class Attribute(BaseModel):
    """A named, optionally typed attribute value."""

    name: str
    type: str | None = None
    value: Any = None

    model_config = {"extra": "allow"}


class Annotation(BaseModel):
    """Decorator-like metadata, e.g. @start or @async."""

    name: str
    value: str | None = None

    model_config = {"extra": "allow"}


class MachineNode(BaseModel):
    """A single node of the machine graph."""

    name: str
    type: str | None = None
    parent: str | None = None
    title: str | None = None
    attributes: list[Attribute] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @property
    def kind(self) -> str:
        return (self.type or "").lower()

    def attrs(self) -> dict[str, Any]:
        """Attributes as a plain mapping with typed values."""
        return {attr.name: parse_attribute_value(attr.value, attr.type) for attr in self.attributes}

    def get_attr(self, name: str, default: Any = None) -> Any:
        for attr in self.attributes:
            if attr.name == name:
                return parse_attribute_value(attr.value, attr.type)
        return default

    def has_annotation(self, name: str) -> bool:
        return any(a.name.lower() == name.lower() for a in self.annotations)


class MachineEdge(BaseModel):
    """
    A directed connection between nodes.

    Examples:
        MachineEdge(source="Review", target="Publish", label="when: approved == true")
        MachineEdge(source="Worker", target="results", label="write: score,summary")
        MachineEdge(source="Dispatch", target="Job", annotations=[Annotation(name="async")])
    """

    source: str
    target: str = ""
    targets: list[str] = Field(
        default_factory=list,
        description="Fan-out targets; when set, each one becomes its own edge",
    )
    type: str | None = None
    label: str | None = None
    value: dict[str, Any] | None = None
    arrow_type: str = Field(default="->", alias="arrowType")
    source_attribute: str | None = Field(default=None, alias="sourceAttribute")
    target_attribute: str | None = Field(default=None, alias="targetAttribute")
    source_multiplicity: str | None = Field(default=None, alias="sourceMultiplicity")
    target_multiplicity: str | None = Field(default=None, alias="targetMultiplicity")
    annotations: list[Annotation] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def text(self) -> str:
        """The label directive: explicit label, parser value text, or edge type."""
        if self.label:
            return self.label
        if self.value and isinstance(self.value.get("text"), str):
            return self.value["text"]
        return self.type or ""

    def has_annotation(self, name: str) -> bool:
        return any(a.name.lower() == name.lower() for a in self.annotations)


class MachineSnapshot(BaseModel):
    """
    Complete structural view of a machine.

    Example:
        MachineSnapshot(
            title="Review",
            nodes=[
                MachineNode(name="Start", annotations=[Annotation(name="start")]),
                MachineNode(name="Draft", type="task", attributes=[
                    Attribute(name="prompt", value="Write a draft"),
                ]),
            ],
            edges=[MachineEdge(source="Start", target="Draft")],
        )
    """

    title: str = ""
    nodes: list[MachineNode] = Field(default_factory=list)
    edges: list[MachineEdge] = Field(default_factory=list)
    attributes: list[Attribute] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    # ------------------------------------------------------------------
    # Construction / export
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MachineSnapshot":
        """Build a snapshot from its JSON form, flattening nested node lists."""
        data = dict(data)
        flat_nodes: list[dict[str, Any]] = []
        extra_edges: list[dict[str, Any]] = []

        def collect(raw_nodes: list[dict[str, Any]], parent: str | None) -> None:
            for raw in raw_nodes:
                raw = dict(raw)
                children = raw.pop("nodes", None) or []
                extra_edges.extend(raw.pop("edges", None) or [])
                if parent and not raw.get("parent"):
                    raw["parent"] = parent
                flat_nodes.append(raw)
                collect(children, raw["name"])

        collect(data.get("nodes", []), None)
        data["nodes"] = flat_nodes
        data["edges"] = list(data.get("edges", [])) + extra_edges
        return cls.model_validate(data)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_node(self, name: str) -> MachineNode | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def expanded_edges(self) -> list[MachineEdge]:
        """One edge per target, in declaration order."""
        result = []
        for edge in self.edges:
            if edge.targets:
                for target in edge.targets:
                    result.append(edge.model_copy(update={"target": target, "targets": []}))
            else:
                result.append(edge)
        return result

    def get_outgoing_edges(self, name: str) -> list[MachineEdge]:
        return [e for e in self.expanded_edges() if e.source == name]

    def get_incoming_edges(self, name: str) -> list[MachineEdge]:
        return [e for e in self.expanded_edges() if e.target == name]

    def children_of(self, name: str) -> list[MachineNode]:
        return [n for n in self.nodes if n.parent == name]

    def ancestors_of(self, name: str) -> list[MachineNode]:
        """Ancestor chain, nearest first. Stops on a parent cycle."""
        chain: list[MachineNode] = []
        seen = {name}
        node = self.get_node(name)
        while node is not None and node.parent and node.parent not in seen:
            seen.add(node.parent)
            parent = self.get_node(node.parent)
            if parent is None:
                break
            chain.append(parent)
            node = parent
        return chain

    def machine_attrs(self) -> dict[str, Any]:
        return {attr.name: parse_attribute_value(attr.value, attr.type) for attr in self.attributes}

    def is_meta_enabled(self) -> bool:
        return is_truthy_flag(self.machine_attrs().get("meta"))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Validate the snapshot structure."""
        errors = []

        seen: set[str] = set()
        for node in self.nodes:
            if not node.name:
                errors.append("Node with empty name")
                continue
            if node.name in seen:
                errors.append(f"Duplicate node name: '{node.name}'")
            seen.add(node.name)

        for node in self.nodes:
            if node.parent and node.parent not in seen:
                errors.append(f"Node '{node.name}' references missing parent '{node.parent}'")

        for node in self.nodes:
            cursor = node
            visited = {node.name}
            while cursor is not None and cursor.parent:
                if cursor.parent in visited:
                    errors.append(f"Parent cycle detected at node '{node.name}'")
                    break
                visited.add(cursor.parent)
                cursor = self.get_node(cursor.parent)

        for edge in self.expanded_edges():
            if edge.source not in seen:
                errors.append(f"Edge references missing source '{edge.source}'")
            if not edge.target:
                errors.append(f"Edge from '{edge.source}' has no target")
            elif edge.target not in seen:
                errors.append(
                    f"Edge '{edge.source}' -> '{edge.target}' references missing target"
                )

        return errors


# ---------------------------------------------------------------------------
# Node kind predicates
# ---------------------------------------------------------------------------


def is_state(node: MachineNode) -> bool:
    return node.kind == "state"


def is_init(node: MachineNode) -> bool:
    return node.kind == "init"


def is_task(node: MachineNode) -> bool:
    """Task-kind, or any node carrying a prompt."""
    return node.kind == "task" or any(a.name == "prompt" for a in node.attributes)


def has_prompt(node: MachineNode) -> bool:
    return any(a.name == "prompt" for a in node.attributes)


def is_tool(node: MachineNode) -> bool:
    return node.kind == "tool"


def is_context(node: MachineNode) -> bool:
    """
    Context-kind node, or an untyped node whose name marks it as a data holder.

    Nodes explicitly typed as something else (task, state, tool, ...) are
    never treated as context because of their name.
    """
    if node.kind in CONTEXT_KINDS:
        return True
    if node.kind:
        return False
    name = node.name.lower()
    return any(hint in name for hint in CONTEXT_NAME_HINTS)


def is_module(snapshot: MachineSnapshot, node: MachineNode) -> bool:
    """A state-kind node with children."""
    return is_state(node) and bool(snapshot.children_of(node.name))


def is_executable(node: MachineNode) -> bool:
    return node.kind not in NON_EXECUTABLE_KINDS and not is_context(node)


def has_meta(node: MachineNode) -> bool:
    return is_truthy_flag(node.get_attr("meta"))


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def is_truthy_flag(value: Any) -> bool:
    """True for boolean True or the string "true" (any case, optionally quoted)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().strip("\"'").lower() == "true"
    return False


def parse_attribute_value(value: Any, type_name: str | None = None) -> Any:
    """Coerce a raw attribute value using its declared type."""
    if not isinstance(value, str):
        return value

    clean = value.strip()
    if len(clean) >= 2 and clean[0] == clean[-1] and clean[0] in "\"'":
        clean = clean[1:-1]

    kind = (type_name or "").lower()
    if kind == "number":
        try:
            return int(clean)
        except ValueError:
            try:
                return float(clean)
            except ValueError:
                return clean
    if kind == "boolean":
        return clean.lower() == "true"
    if kind == "json" or not kind:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return clean
    return clean
