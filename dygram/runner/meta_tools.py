"""
Meta tools - let a running machine inspect and rewrite itself.

The manager owns the dynamic tool registry for a run and every mutation
of the machine definition. Each successful mutating call appends exactly
one MutationRecord to the execution state; rejected calls append nothing
and report {"success": False, "message": ...} to the caller.

Snapshots are replaced, never edited: a step that already captured the
old snapshot keeps running against it, and the new one applies from the
next step on.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

from dygram.errors import EffectApplicationError, MutationValidationError
from dygram.graph.code_sandbox import CodeSandbox, SandboxViolation
from dygram.graph.machine import MachineSnapshot, is_tool
from dygram.graph.validator import MachineValidator
from dygram.llm.provider import Oracle, Tool
from dygram.runner.tool_registry import ToolRegistry
from dygram.schemas.execution import (
    DynamicToolDefinition,
    DynamicToolStrategy,
    ExecutionState,
    MutationRecord,
    ToolImprovementProposal,
)

logger = logging.getLogger(__name__)

STRATEGY_ENUM = ["agent_backed", "generated_code", "code_generation", "composition"]

META_TOOLS: list[Tool] = [
    Tool(
        name="get_machine_definition",
        description=(
            "Get the current machine definition. Use this to understand the machine "
            "structure before making modifications."
        ),
        parameters={
            "type": "object",
            "properties": {
                "format": {
                    "type": "string",
                    "enum": ["json", "dsl", "both"],
                    "description": "json (structured), dsl (textual source), or both",
                },
            },
        },
    ),
    Tool(
        name="update_definition",
        description=(
            "Replace the machine definition with a new structure. "
            "Use get_machine_definition first to see the current structure."
        ),
        parameters={
            "type": "object",
            "properties": {
                "machine": {
                    "type": "object",
                    "description": "Complete machine definition with title, nodes, and edges",
                },
                "reason": {
                    "type": "string",
                    "description": "Why the machine is being modified",
                },
            },
            "required": ["machine", "reason"],
        },
    ),
    Tool(
        name="construct_tool",
        description=(
            "Construct a new tool when no existing tool provides a needed capability."
        ),
        parameters={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Tool name (snake_case)"},
                "description": {"type": "string", "description": "What the tool does"},
                "input_schema": {
                    "type": "object",
                    "description": "JSON Schema for the tool's input",
                },
                "implementation_strategy": {
                    "type": "string",
                    "enum": STRATEGY_ENUM,
                    "description": (
                        "agent_backed (answered by the agent), generated_code "
                        "(Python run(input) function), composition (chain of tools)"
                    ),
                },
                "implementation_details": {
                    "type": "string",
                    "description": (
                        "agent_backed: instructions. generated_code: Python source. "
                        "composition: JSON list of tool names."
                    ),
                },
            },
            "required": [
                "name",
                "description",
                "input_schema",
                "implementation_strategy",
                "implementation_details",
            ],
        },
    ),
    Tool(
        name="list_available_tools",
        description="List meta tools and dynamically constructed tools",
        parameters={
            "type": "object",
            "properties": {
                "include_source": {
                    "type": "boolean",
                    "description": "Include implementation payloads",
                },
                "filter_type": {
                    "type": "string",
                    "enum": ["all", "dynamic", "meta"],
                },
            },
        },
    ),
    Tool(
        name="propose_tool_improvement",
        description="Record a proposed improvement to an existing tool for later review",
        parameters={
            "type": "object",
            "properties": {
                "tool_name": {"type": "string"},
                "rationale": {"type": "string"},
                "proposed_changes": {"type": "string"},
            },
            "required": ["tool_name", "rationale", "proposed_changes"],
        },
    ),
    Tool(
        name="get_tool_nodes",
        description=(
            "List tool nodes declared in the machine, flagging loosely defined ones "
            "that still need schemas or an implementation"
        ),
        parameters={
            "type": "object",
            "properties": {
                "include_registered": {
                    "type": "boolean",
                    "description": "Report whether each tool is already registered",
                },
            },
        },
    ),
    Tool(
        name="build_tool_from_node",
        description="Build and register a dynamic tool from a tool node declaration",
        parameters={
            "type": "object",
            "properties": {
                "tool_name": {"type": "string", "description": "Name of the tool node"},
                "strategy": {"type": "string", "enum": STRATEGY_ENUM},
                "input_schema": {"type": "object"},
                "output_schema": {"type": "object"},
                "implementation_details": {"type": "string"},
            },
            "required": ["tool_name"],
        },
    ),
    Tool(
        name="add_node",
        description="Add a node to the machine",
        parameters={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "type": {"type": "string", "description": "Node kind, e.g. task or state"},
                "attributes": {
                    "type": "object",
                    "description": "Attribute name -> value",
                },
                "parent": {"type": "string", "description": "Enclosing module, if any"},
            },
            "required": ["name", "type"],
        },
    ),
    Tool(
        name="add_edge",
        description="Add an edge between two existing nodes",
        parameters={
            "type": "object",
            "properties": {
                "source": {"type": "string"},
                "target": {"type": "string"},
                "label": {"type": "string"},
            },
            "required": ["source", "target"],
        },
    ),
]

META_TOOL_NAMES = frozenset(t.name for t in META_TOOLS)


def _failure(message: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "message": message, **extra}


def _decode_json_string(value: Any) -> Any:
    """Decode strings that look like JSON objects or arrays; leave anything else alone."""
    if isinstance(value, str):
        stripped = value.strip()
        if (stripped.startswith("{") and stripped.endswith("}")) or (
            stripped.startswith("[") and stripped.endswith("]")
        ):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                return value
    return value


def parse_composition(implementation: Any) -> list[str]:
    """
    Normalize a composition payload into an ordered list of tool names.

    Accepts a list, a {"steps": [...]} object, or either one JSON-encoded.

    Raises:
        ValueError: If the payload has no usable steps
    """
    payload = implementation
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid composition definition: {e}") from e
    if isinstance(payload, dict):
        payload = payload.get("steps") or payload.get("tools")

    if not isinstance(payload, list) or not payload:
        raise ValueError("Composition must be a non-empty list of tool names")

    steps = []
    for step in payload:
        if isinstance(step, dict):
            step = step.get("tool") or step.get("name")
        if not isinstance(step, str) or not step:
            raise ValueError(f"Invalid composition step: {step!r}")
        steps.append(step)
    return steps


class MetaToolManager:
    """
    Applies meta mutations for one run.

    Args:
        state: Execution state whose snapshot, mutation log and tool
            definitions the manager maintains
        oracle: Answers agent_backed dynamic tools
        sandbox: Runs generated_code dynamic tools
        dsl_serializer: Optional callable rendering a machine dict as text
        on_machine_update: Optional callback(dsl, snapshot) fired after
            every accepted machine change
    """

    def __init__(
        self,
        state: ExecutionState,
        oracle: Oracle | None = None,
        sandbox: CodeSandbox | None = None,
        dsl_serializer: Callable[[dict[str, Any]], str] | None = None,
        on_machine_update: Callable[[str | None, MachineSnapshot], None] | None = None,
    ):
        self.state = state
        self.oracle = oracle
        self.sandbox = sandbox or CodeSandbox()
        self.dsl_serializer = dsl_serializer
        self.on_machine_update = on_machine_update
        self.registry = ToolRegistry()
        self.validator = MachineValidator()

        self._handlers: dict[str, Callable[..., Any]] = {
            "get_machine_definition": self.get_machine_definition,
            "update_definition": self.update_definition,
            "construct_tool": self.construct_tool,
            "list_available_tools": self.list_available_tools,
            "propose_tool_improvement": self.propose_tool_improvement,
            "get_tool_nodes": self.get_tool_nodes,
            "build_tool_from_node": self.build_tool_from_node,
            "add_node": self.add_node,
            "add_edge": self.add_edge,
        }

        self.rebuild_handlers()

    # ------------------------------------------------------------------
    # Registry plumbing
    # ------------------------------------------------------------------

    def get_meta_tools(self) -> list[Tool]:
        return list(META_TOOLS)

    def get_dynamic_tools(self) -> list[Tool]:
        return list(self.registry.get_tools().values())

    def get_definition(self, name: str) -> DynamicToolDefinition | None:
        for definition in self.state.dynamic_tools:
            if definition.name == name:
                return definition
        return None

    def is_meta_tool(self, name: str) -> bool:
        return name in META_TOOL_NAMES

    def bind(self, state: ExecutionState) -> None:
        """Attach to a different execution state (e.g. after a checkpoint restore)."""
        self.state = state
        self.rebuild_handlers()

    def rebuild_handlers(self) -> None:
        """Recreate executors for every stored dynamic tool definition."""
        self.registry.clear()
        for definition in self.state.dynamic_tools:
            try:
                self._register(definition)
            except (ValueError, SandboxViolation) as e:
                logger.warning(f"      ⚠ Could not rebuild dynamic tool '{definition.name}': {e}")

    def _record(self, mutation_type: str, payload: dict[str, Any]) -> MutationRecord:
        record = MutationRecord(type=mutation_type, payload=payload)
        self.state.mutations.append(record)
        logger.info(f"🔧 Mutation recorded: {mutation_type}", extra={"mutation_type": mutation_type})
        return record

    async def handle(self, name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
        """
        Dispatch a meta tool call.

        Raises:
            EffectApplicationError: If name is not a meta tool
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise EffectApplicationError(f"Unknown meta tool: {name}")
        try:
            return await handler(**tool_input)
        except TypeError as e:
            return _failure(f"Invalid arguments for '{name}': {e}")

    # ------------------------------------------------------------------
    # Dynamic tool strategies
    # ------------------------------------------------------------------

    def _build_handler(self, definition: DynamicToolDefinition) -> Callable[[dict], Any]:
        """
        Create the executor for a dynamic tool from its stored definition.

        Raises:
            ValueError: If the payload cannot back the strategy
            SandboxViolation: If generated code fails the sandbox check
        """
        strategy = definition.strategy
        name = definition.name

        if strategy == DynamicToolStrategy.AGENT_BACKED:
            instructions = str(definition.implementation or definition.description)

            async def run_agent_backed(tool_input: dict) -> Any:
                if self.oracle is None:
                    raise EffectApplicationError(
                        f"Tool '{name}' is agent-backed but no oracle is configured"
                    )
                return await self.oracle.run_tool(name, instructions, tool_input)

            return run_agent_backed

        if strategy == DynamicToolStrategy.GENERATED_CODE:
            code = definition.implementation
            if not isinstance(code, str) or not code.strip():
                raise ValueError("generated_code tools need Python source")
            return self.sandbox.compile_function(code)

        if strategy == DynamicToolStrategy.COMPOSITION:
            steps = parse_composition(definition.implementation)
            unknown = [s for s in steps if not self.registry.has_tool(s) and s != name]
            if name in steps:
                raise ValueError(f"Composition '{name}' cannot include itself")
            if unknown:
                raise ValueError(f"Composition references unknown tools: {', '.join(unknown)}")

            async def run_composition(tool_input: dict) -> Any:
                current: Any = tool_input
                for step in steps:
                    step_input = current if isinstance(current, dict) else {"input": current}
                    current = await self.registry.invoke(step, step_input)
                return current

            return run_composition

        raise ValueError(f"Unsupported strategy: {strategy}")

    def _register(self, definition: DynamicToolDefinition) -> None:
        handler = self._build_handler(definition)
        tool = Tool(
            name=definition.name,
            description=definition.description,
            parameters=definition.input_schema,
        )
        self.registry.register(definition.name, tool, handler)

    async def execute_dynamic_tool(self, name: str, tool_input: dict[str, Any]) -> Any:
        """
        Run a dynamic tool.

        Raises:
            EffectApplicationError: If the tool is unknown, its input or output
                fails its schema, or the implementation fails
        """
        definition = self.get_definition(name)
        if definition is None or not self.registry.has_tool(name):
            raise EffectApplicationError(f"Dynamic tool '{name}' not found")

        checked = self.validator.validate_tool_input(tool_input, definition.input_schema)
        if not checked.success:
            raise EffectApplicationError(f"Invalid input for '{name}': {checked.error}")

        try:
            result = await self.registry.invoke(name, tool_input)
        except EffectApplicationError:
            raise
        except Exception as e:
            raise EffectApplicationError(f"Tool '{name}' failed: {type(e).__name__}: {e}") from e

        checked = self.validator.validate_tool_output(result, definition.output_schema)
        if not checked.success:
            raise EffectApplicationError(f"Invalid output from '{name}': {checked.error}")
        return result

    # ------------------------------------------------------------------
    # Machine definition
    # ------------------------------------------------------------------

    def _render_dsl(self, machine: dict[str, Any]) -> str | None:
        if self.dsl_serializer is None:
            return None
        return self.dsl_serializer(machine)

    def _live_positions(self) -> list[tuple[str, str]]:
        return [(p.id, p.current_node) for p in self.state.paths if not p.is_terminal]

    def replace_snapshot(
        self,
        machine: dict[str, Any] | MachineSnapshot,
        mutation_type: str,
        payload: dict[str, Any],
    ) -> MachineSnapshot:
        """
        Validate and swap in a new machine definition.

        Raises:
            MutationValidationError: If the replacement is invalid; nothing is changed
        """
        result, snapshot = self.validator.validate_replacement(machine, self._live_positions())
        if snapshot is None:
            raise MutationValidationError(
                f"Invalid machine definition: {result.error}", errors=result.errors
            )

        self.state.snapshot = snapshot
        self._record(
            mutation_type,
            {
                **payload,
                "machine": {
                    "title": snapshot.title,
                    "nodeCount": len(snapshot.nodes),
                    "edgeCount": len(snapshot.edges),
                },
            },
        )

        self._notify(snapshot)
        return snapshot

    def _notify(self, snapshot: MachineSnapshot) -> None:
        """
        Hand an accepted snapshot to the persistence collaborator.

        Runs after the mutation is committed. A failing callback is logged;
        the mutation stays applied and the step still succeeds.
        """
        if self.on_machine_update is None:
            return
        try:
            self.on_machine_update(self._render_dsl(snapshot.to_dict()), snapshot)
        except Exception as e:
            logger.error(
                f"      ✗ Machine update notification failed: {type(e).__name__}: {e}",
                exc_info=True,
            )

    async def get_machine_definition(self, format: str = "both") -> dict[str, Any]:
        result: dict[str, Any] = {}
        machine = self.state.snapshot.to_dict()
        if format in ("json", "both"):
            result["json"] = machine
        if format in ("dsl", "both"):
            result["dsl"] = self._render_dsl(machine)
        return result

    async def update_definition(self, machine: Any, reason: str = "") -> dict[str, Any]:
        try:
            snapshot = self.replace_snapshot(
                machine,
                "machine_updated",
                {"reason": reason},
            )
        except MutationValidationError as e:
            return _failure(str(e), errors=e.errors)

        return {
            "success": True,
            "message": "Machine definition updated successfully",
            "dsl": self._render_dsl(snapshot.to_dict()),
            "summary": {
                "title": snapshot.title,
                "nodes": len(snapshot.nodes),
                "edges": len(snapshot.edges),
            },
        }

    async def add_node(
        self,
        name: str,
        type: str | None = None,
        attributes: dict[str, Any] | None = None,
        parent: str | None = None,
    ) -> dict[str, Any]:
        if self.state.snapshot.get_node(name) is not None:
            return _failure(f"Node '{name}' already exists")

        machine = self.state.snapshot.to_dict()
        node: dict[str, Any] = {
            "name": name,
            "type": type,
            "attributes": [
                {"name": key, "value": value} for key, value in (attributes or {}).items()
            ],
        }
        if parent:
            node["parent"] = parent
        machine["nodes"].append(node)

        try:
            self.replace_snapshot(machine, "node_added", {"node": name, "type": type})
        except MutationValidationError as e:
            return _failure(str(e), errors=e.errors)
        return {"success": True, "message": f"Node '{name}' added"}

    async def add_edge(self, source: str, target: str, label: str | None = None) -> dict[str, Any]:
        machine = self.state.snapshot.to_dict()
        edge: dict[str, Any] = {"source": source, "target": target}
        if label:
            edge["label"] = label
        machine.setdefault("edges", []).append(edge)

        try:
            self.replace_snapshot(
                machine, "edge_added", {"source": source, "target": target, "label": label}
            )
        except MutationValidationError as e:
            return _failure(str(e), errors=e.errors)
        return {"success": True, "message": f"Edge '{source}' -> '{target}' added"}

    # ------------------------------------------------------------------
    # Dynamic tools
    # ------------------------------------------------------------------

    async def construct_tool(
        self,
        name: str,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        implementation_strategy: str = "agent_backed",
        implementation_details: Any = None,
        output_schema: dict[str, Any] | None = None,
        origin: str = "construct_tool",
    ) -> dict[str, Any]:
        if self.get_definition(name) is not None or self.is_meta_tool(name):
            return _failure(
                f"Tool '{name}' already exists. Use propose_tool_improvement to suggest changes."
            )

        try:
            strategy = DynamicToolStrategy.parse(implementation_strategy)
        except ValueError:
            return _failure(f"Unknown implementation strategy: {implementation_strategy}")

        for label, schema in (("input", input_schema), ("output", output_schema)):
            checked = self.validator.check_schema(schema)
            if not checked.success:
                return _failure(f"Invalid {label} schema for '{name}': {checked.error}")

        definition = DynamicToolDefinition(
            name=name,
            description=description or f"Tool: {name}",
            input_schema=input_schema or {"type": "object", "properties": {}},
            output_schema=output_schema,
            strategy=strategy,
            implementation=implementation_details,
            origin=origin,
        )

        try:
            self._register(definition)
        except SandboxViolation as e:
            return _failure(f"Failed to compile tool code: {e}")
        except ValueError as e:
            return _failure(str(e))

        self.state.dynamic_tools.append(definition)
        self._record(
            "tool_constructed",
            {
                "tool": {
                    "name": name,
                    "description": definition.description,
                    "input_schema": definition.input_schema,
                    "strategy": str(strategy),
                },
                "origin": origin,
            },
        )
        logger.info(f"🔧 Tool constructed: {name} ({strategy})", extra={"tool_name": name})

        return {
            "success": True,
            "message": f"Tool '{name}' constructed and registered",
            "tool": {"name": name, "description": definition.description, "strategy": str(strategy)},
        }

    async def list_available_tools(
        self, include_source: bool = False, filter_type: str = "all"
    ) -> dict[str, Any]:
        dynamic_tools = []
        meta_tools = []

        if filter_type in ("all", "dynamic"):
            for definition in self.state.dynamic_tools:
                entry = {
                    "name": definition.name,
                    "description": definition.description,
                    "strategy": str(definition.strategy),
                    "created": definition.created_at,
                }
                if include_source:
                    entry["implementation"] = definition.implementation
                dynamic_tools.append(entry)

        if filter_type in ("all", "meta"):
            meta_tools = [
                {"name": t.name, "description": t.description, "type": "meta"} for t in META_TOOLS
            ]

        return {
            "dynamicTools": dynamic_tools,
            "metaTools": meta_tools,
            "totalCount": len(dynamic_tools) + len(meta_tools),
        }

    async def propose_tool_improvement(
        self, tool_name: str, rationale: str, proposed_changes: str
    ) -> dict[str, Any]:
        if self.get_definition(tool_name) is None and not self.is_meta_tool(tool_name):
            return _failure(f"Tool '{tool_name}' does not exist")

        proposal = ToolImprovementProposal(
            tool_name=tool_name,
            rationale=rationale,
            proposed_changes=proposed_changes,
        )
        self.state.proposals.append(proposal)
        self._record("tool_improvement_proposed", {"proposal": proposal.model_dump()})

        return {
            "success": True,
            "message": f"Improvement proposal for '{tool_name}' recorded",
            "proposalCount": len(self.state.proposals),
        }

    def tool_nodes(self) -> list[dict[str, Any]]:
        """Tool-kind nodes of the live snapshot with decoded attributes."""
        nodes = []
        for node in self.state.snapshot.nodes:
            if not is_tool(node):
                continue
            attrs = {key: _decode_json_string(value) for key, value in node.attrs().items()}
            nodes.append({"name": node.name, "attributes": attrs})
        return nodes

    @staticmethod
    def is_loosely_defined(attributes: dict[str, Any]) -> bool:
        has_input_schema = attributes.get("input_schema") is not None
        has_output_schema = attributes.get("output_schema") is not None
        has_code = attributes.get("code") is not None or attributes.get("implementation") is not None
        return not (has_input_schema and has_output_schema and has_code)

    async def get_tool_nodes(self, include_registered: bool = False) -> dict[str, Any]:
        tools = []
        for tool_node in self.tool_nodes():
            entry = {
                "name": tool_node["name"],
                "attributes": tool_node["attributes"],
                "isLooselyDefined": self.is_loosely_defined(tool_node["attributes"]),
            }
            if include_registered:
                entry["isRegistered"] = self.get_definition(tool_node["name"]) is not None
            tools.append(entry)
        return {"tools": tools, "totalCount": len(tools)}

    @staticmethod
    def infer_strategy(attributes: dict[str, Any]) -> str:
        """Strategy for a tool node that does not name one."""
        declared = attributes.get("strategy")
        if isinstance(declared, str) and declared:
            return declared
        if attributes.get("code") is not None:
            return "generated_code"
        if attributes.get("composition") is not None:
            return "composition"
        return "agent_backed"

    async def build_tool_from_node(
        self,
        tool_name: str,
        strategy: str | None = None,
        input_schema: dict[str, Any] | None = None,
        output_schema: dict[str, Any] | None = None,
        implementation_details: Any = None,
    ) -> dict[str, Any]:
        tool_node = next((t for t in self.tool_nodes() if t["name"] == tool_name), None)
        if tool_node is None:
            return _failure(f"Tool node '{tool_name}' not found in machine definition")
        if self.get_definition(tool_name) is not None:
            return _failure(f"Tool '{tool_name}' is already registered dynamically")

        attributes = dict(tool_node["attributes"])
        if input_schema:
            attributes["input_schema"] = input_schema
        if output_schema:
            attributes["output_schema"] = output_schema

        try:
            parsed = DynamicToolStrategy.parse(strategy or self.infer_strategy(attributes))
        except ValueError:
            return _failure(f"Unknown implementation strategy: {strategy}")

        if implementation_details:
            key = {
                DynamicToolStrategy.GENERATED_CODE: "code",
                DynamicToolStrategy.AGENT_BACKED: "prompt",
                DynamicToolStrategy.COMPOSITION: "composition",
            }[parsed]
            attributes[key] = implementation_details

        description = attributes.get("description") or f"Tool: {tool_name}"
        # Persisted tools carry their payload under "implementation"
        if parsed == DynamicToolStrategy.GENERATED_CODE:
            implementation = attributes.get("code") or attributes.get("implementation")
        elif parsed == DynamicToolStrategy.COMPOSITION:
            implementation = attributes.get("composition") or attributes.get("implementation")
        else:
            implementation = (
                attributes.get("prompt") or attributes.get("implementation") or description
            )

        input_schema = attributes.get("input_schema")
        return await self.construct_tool(
            name=tool_name,
            description=str(description),
            input_schema=input_schema if isinstance(input_schema, dict) else None,
            implementation_strategy=str(parsed),
            implementation_details=implementation,
            output_schema=(
                attributes["output_schema"]
                if isinstance(attributes.get("output_schema"), dict)
                else None
            ),
            origin="tool_node",
        )

    def persist_tool(self, name: str) -> dict[str, Any]:
        """
        Write a constructed tool back into the machine as a tool-kind node.

        An existing node of the same name is replaced.
        """
        definition = self.get_definition(name)
        if definition is None:
            return _failure(f"Dynamic tool '{name}' not found")

        implementation = definition.implementation
        if not isinstance(implementation, str):
            implementation = json.dumps(implementation)
        attributes = [
            {"name": "description", "value": definition.description},
            {"name": "input_schema", "type": "json", "value": json.dumps(definition.input_schema)},
            {"name": "strategy", "value": str(definition.strategy)},
            {"name": "implementation", "value": implementation},
        ]
        if definition.output_schema is not None:
            attributes.append(
                {
                    "name": "output_schema",
                    "type": "json",
                    "value": json.dumps(definition.output_schema),
                }
            )

        machine = self.state.snapshot.to_dict()
        machine["nodes"] = [n for n in machine["nodes"] if n.get("name") != name]
        machine["nodes"].append({"name": name, "type": "tool", "attributes": attributes})

        try:
            self.replace_snapshot(
                machine, "machine_updated", {"reason": f"Persist tool '{name}'", "tool": name}
            )
        except MutationValidationError as e:
            return _failure(str(e), errors=e.errors)
        return {"success": True, "message": f"Tool '{name}' persisted as a tool node"}
