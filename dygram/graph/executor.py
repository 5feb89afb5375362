"""
Machine Executor - advances every execution path of a machine, one step at a time.

The executor:
1. Takes a MachineSnapshot and an Oracle
2. Creates the initial paths (start-annotated, zero-incoming, or a default)
3. Each step, moves every active path by at most one effect:
   an automatic transition, a pass-through, or the single tool the oracle picks
4. Enforces step / invocation / timeout limits and cycle detection per path
5. Reports a typed result for every path it touched

Paths never block each other except a parent waiting on children it spawned
with await_result. Within one step, paths run in path-id order so writes to
the shared context are deterministic. A failing path is marked failed and the
step carries on with the others.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from dygram.errors import (
    ConfigurationError,
    DygramError,
    EffectApplicationError,
    OracleInvocationError,
    ResourceLimitExceeded,
)
from dygram.graph.code_sandbox import CodeSandbox
from dygram.graph.conditions import build_condition_scope
from dygram.graph.machine import (
    NON_EXECUTABLE_KINDS,
    MachineSnapshot,
    is_context,
    is_executable,
    is_state,
)
from dygram.graph.permissions import (
    ContextPermission,
    readable_fields,
    resolve_context_permissions,
)
from dygram.graph.prompt_composer import (
    build_context_summaries,
    build_identity,
    build_narrative,
    build_role_description,
    build_transition_marker,
    compose_system_prompt,
)
from dygram.graph.tool_surface import (
    EffectType,
    ToolSurface,
    build_tool_surface,
    meta_enabled,
)
from dygram.graph.transitions import (
    CandidateTransition,
    TransitionClassification,
    classify_transitions,
    describe_transitions,
    resolve_entry,
)
from dygram.graph.validator import MachineValidator
from dygram.llm.provider import DecisionRequest, Oracle, ToolUse
from dygram.observability import set_trace_context
from dygram.runner.meta_tools import MetaToolManager
from dygram.schemas.checkpoint import Checkpoint
from dygram.schemas.execution import (
    ExecutionPath,
    ExecutionState,
    PathStatus,
    ResourceLimits,
    Transition,
    TransitionKind,
    deserialize_state,
    serialize_state,
)

logger = logging.getLogger(__name__)


@dataclass
class PathStepResult:
    """Outcome of one step for one path."""

    path_id: str
    status: PathStatus
    node: str  # Node the path was at when the step began
    transition: Transition | None = None
    effect: str | None = None  # Tool applied, or the automatic rule that fired
    output: Any = None
    error: str | None = None
    error_type: str | None = None


@dataclass
class StepResult:
    """Outcome of one scheduler step across all paths."""

    step: int
    paths: list[PathStepResult] = field(default_factory=list)
    active_paths: int = 0
    waiting_paths: int = 0

    @property
    def is_complete(self) -> bool:
        """True when no path can make further progress."""
        return self.active_paths == 0 and self.waiting_paths == 0

    @property
    def failed(self) -> list[PathStepResult]:
        return [r for r in self.paths if r.status == PathStatus.FAILED]


@dataclass
class ExecutionResult:
    """Result of running a machine to completion."""

    success: bool
    steps_executed: int = 0
    error: str | None = None
    path_statuses: dict[str, str] = field(default_factory=dict)  # {path_id: status}
    node_visit_counts: dict[str, int] = field(default_factory=dict)
    state: ExecutionState | None = None


# ---------------------------------------------------------------------------
# Run setup
# ---------------------------------------------------------------------------


def determine_initial_nodes(snapshot: MachineSnapshot) -> list[str]:
    """
    Nodes the run starts at, in declaration order.

    1. Nodes annotated @start
    2. Else top-level executable nodes with no incoming flow edge
    3. Else one default: a node named "start", or the first executable node

    Raises:
        ConfigurationError: If the snapshot has no nodes
    """
    if not snapshot.nodes:
        raise ConfigurationError("Machine has no nodes to execute")

    annotated = [n.name for n in snapshot.nodes if n.has_annotation("start")]
    if annotated:
        return annotated

    roots = []
    for node in snapshot.nodes:
        if node.parent or node.kind in NON_EXECUTABLE_KINDS or is_context(node):
            continue
        incoming = [
            e
            for e in snapshot.get_incoming_edges(node.name)
            if (source := snapshot.get_node(e.source)) is not None and is_executable(source)
        ]
        if not incoming:
            roots.append(node.name)
    if roots:
        return roots

    for node in snapshot.nodes:
        if node.name.lower() == "start":
            return [node.name]
    for node in snapshot.nodes:
        if is_executable(node):
            return [node.name]
    return [snapshot.nodes[0].name]


def create_initial_state(
    snapshot: MachineSnapshot | dict[str, Any],
    limits: ResourceLimits | None = None,
    run_id: str | None = None,
    now: float | None = None,
) -> ExecutionState:
    """
    Build the execution state for a new run.

    Raises:
        ConfigurationError: If the snapshot is malformed or empty
    """
    validator = MachineValidator()
    result, parsed = validator.parse_machine(snapshot)
    if parsed is None:
        raise ConfigurationError(f"Invalid machine definition: {result.error}")

    structure = validator.validate_structure(parsed)
    if not structure.success:
        raise ConfigurationError(f"Invalid machine definition: {structure.error}")

    started_at = time.time() if now is None else now
    state = ExecutionState(
        snapshot=parsed,
        limits=limits or ResourceLimits.from_config(),
        started_at=started_at,
    )
    if run_id:
        state.run_id = run_id

    for node_name in determine_initial_nodes(parsed):
        position, _ = resolve_entry(parsed, node_name)
        path = ExecutionPath(
            id=state.new_path_id(),
            current_node=position,
            start_time=started_at,
            visit_counts={position: 1},
        )
        state.paths.append(path)

    return state


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------


def _active_state(snapshot: MachineSnapshot, path: ExecutionPath) -> str:
    for name in reversed(path.visited_sequence()):
        node = snapshot.get_node(name)
        if node is not None and is_state(node):
            return name
    return ""


def _classify(
    state: ExecutionState,
    snapshot: MachineSnapshot,
    path: ExecutionPath,
) -> tuple[dict[str, ContextPermission], TransitionClassification]:
    permissions = resolve_context_permissions(path.current_node, snapshot)
    scope = build_condition_scope(
        snapshot,
        path.current_node,
        readable_fields(permissions),
        state.context,
        error_count=state.error_count,
        active_state=_active_state(snapshot, path),
    )
    return permissions, classify_transitions(snapshot, path.current_node, scope)


def get_visualization_state(state: ExecutionState) -> dict[str, Any]:
    """
    Read-only view of a run for renderers.

    Returns:
        Per-path status, per-node visit counts and active paths, available
        transitions per active path, and totals by status
    """
    snapshot = state.snapshot
    nodes: dict[str, dict[str, Any]] = {
        n.name: {"visitCount": 0, "activePaths": []} for n in snapshot.nodes
    }
    paths = []
    transitions: dict[str, list[dict[str, Any]]] = {}

    for path in state.paths:
        paths.append(
            {
                "id": path.id,
                "status": str(path.status),
                "currentNode": path.current_node,
                "stepCount": path.step_count,
                "historyLength": len(path.history),
                "parentPathId": path.parent_path_id,
                "error": path.error,
            }
        )
        for name, count in path.visit_counts.items():
            nodes.setdefault(name, {"visitCount": 0, "activePaths": []})
            nodes[name]["visitCount"] += count
        if path.status == PathStatus.ACTIVE and snapshot.get_node(path.current_node):
            nodes[path.current_node]["activePaths"].append(path.id)
            _, classification = _classify(state, snapshot, path)
            transitions[path.id] = describe_transitions(classification)

    totals = {str(status): 0 for status in PathStatus}
    for path in state.paths:
        totals[str(path.status)] += 1

    return {
        "runId": state.run_id,
        "stepCount": state.step_count,
        "errorCount": state.error_count,
        "paths": paths,
        "nodes": nodes,
        "availableTransitions": transitions,
        "totals": totals,
    }


def get_path_statistics(state: ExecutionState) -> dict[str, Any]:
    """Totals per status, average steps per path, longest history."""
    by_status = {str(status): 0 for status in PathStatus}
    for path in state.paths:
        by_status[str(path.status)] += 1
    total = len(state.paths)
    return {
        "total": total,
        "byStatus": by_status,
        "averageSteps": (sum(p.step_count for p in state.paths) / total) if total else 0.0,
        "longestHistory": max((len(p.history) for p in state.paths), default=0),
    }


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class MachineExecutor:
    """
    Executes machines.

    Example:
        executor = MachineExecutor(snapshot, oracle=LLMOracle(provider))

        step = await executor.step()          # advance every path once
        result = await executor.run()         # or loop until nothing is active
    """

    def __init__(
        self,
        snapshot: MachineSnapshot | dict[str, Any] | None = None,
        oracle: Oracle | None = None,
        limits: ResourceLimits | None = None,
        state: ExecutionState | None = None,
        sandbox: CodeSandbox | None = None,
        dsl_serializer: Callable[[dict[str, Any]], str] | None = None,
        on_machine_update: Callable[[str | None, MachineSnapshot], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the executor.

        Args:
            snapshot: Machine to run (ignored when state is given)
            oracle: Decision-maker for agent-decided steps
            limits: Resource limits (defaults come from configuration)
            state: Existing execution state to resume
            sandbox: Sandbox for generated_code dynamic tools
            dsl_serializer: Renders a machine dict as text for meta tools
            on_machine_update: Callback fired after each accepted machine change
            clock: Time source for timeouts

        Raises:
            ConfigurationError: If neither a valid snapshot nor a state is given
        """
        self.clock = clock
        self.oracle = oracle
        self.validator = MachineValidator()

        if state is None:
            if snapshot is None:
                raise ConfigurationError("A machine snapshot or an execution state is required")
            state = create_initial_state(snapshot, limits=limits, now=clock())
        elif limits is not None:
            state.limits = limits
        self.state = state

        self.meta = MetaToolManager(
            state,
            oracle=oracle,
            sandbox=sandbox,
            dsl_serializer=dsl_serializer,
            on_machine_update=on_machine_update,
        )

        set_trace_context(run_id=self.state.run_id)
        logger.info(
            f"🚀 Run {self.state.run_id} ready: '{self.state.snapshot.title}' "
            f"with {len(self.state.paths)} path(s) at "
            f"{', '.join(p.current_node for p in self.state.paths)}"
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def step(self) -> StepResult:
        """
        Advance every active path by at most one effect.

        Paths run in path-id order against the snapshot captured here;
        machine updates made during the step apply from the next one.
        """
        state = self.state
        snapshot = state.snapshot
        now = self.clock()
        state.step_count += 1
        set_trace_context(run_id=state.run_id)

        self._reactivate_waiting()
        result = StepResult(step=state.step_count)

        for path in state.active_paths():
            set_trace_context(path_id=path.id, node=path.current_node)
            result.paths.append(await self._step_path(path, snapshot, now))

        self._reactivate_waiting()
        set_trace_context(path_id=None, node=None)

        result.active_paths = len(state.paths_with_status(PathStatus.ACTIVE))
        result.waiting_paths = len(state.paths_with_status(PathStatus.WAITING))
        return result

    async def run(self, max_steps: int | None = None) -> ExecutionResult:
        """
        Step until no path is active (or max_steps scheduler steps have run).

        Args:
            max_steps: Optional cap on scheduler steps for this call
        """
        steps = 0
        while True:
            self._reactivate_waiting()
            if not self.state.paths_with_status(PathStatus.ACTIVE):
                break
            if max_steps is not None and steps >= max_steps:
                break
            await self.step()
            steps += 1

        failed = self.state.paths_with_status(PathStatus.FAILED)
        stats = get_path_statistics(self.state)
        logger.info(f"✓ Run {self.state.run_id} stopped after {steps} step(s)")
        logger.info(f"   Paths: {stats['byStatus']}")

        return ExecutionResult(
            success=not failed and not self.state.has_live_paths(),
            steps_executed=steps,
            error="; ".join(f"{p.id}: {p.error}" for p in failed) or None,
            path_statuses={p.id: str(p.status) for p in self.state.paths},
            node_visit_counts=self.node_visit_counts(),
            state=self.state,
        )

    def _reactivate_waiting(self) -> None:
        for path in self.state.paths_with_status(PathStatus.WAITING):
            children = [self.state.get_path(pid) for pid in path.awaiting]
            if all(child is None or child.is_terminal for child in children):
                logger.info(f"   ↩ Path {path.id} resumes at {path.current_node}")
                path.status = PathStatus.ACTIVE
                path.awaiting = []

    async def _step_path(
        self,
        path: ExecutionPath,
        snapshot: MachineSnapshot,
        now: float,
    ) -> PathStepResult:
        node_name = path.current_node
        result = PathStepResult(path_id=path.id, status=path.status, node=node_name)

        try:
            if snapshot.get_node(node_name) is None:
                raise EffectApplicationError(f"Current node '{node_name}' no longer exists")

            self._check_limits(path, now)
            path.step_count += 1
            path.node_invocation_counts[node_name] = (
                path.node_invocation_counts.get(node_name, 0) + 1
            )
            self._check_cycle(path)

            logger.info(f"▶ Step {self.state.step_count}: {path.id} at {node_name}")

            permissions, classification = _classify(self.state, snapshot, path)

            if classification.automatic is not None:
                result.transition = self._move(
                    path,
                    classification.automatic,
                    snapshot,
                    TransitionKind.AUTOMATIC,
                    classification.reason,
                )
                result.effect = TransitionKind.AUTOMATIC
            elif classification.is_dead_end:
                path.status = PathStatus.COMPLETED
                logger.info(f"   ✓ {path.id} completed at {node_name}")
            else:
                await self._decide(path, snapshot, permissions, classification, result)

        except DygramError as e:
            self._fail_path(path, e)
        except Exception as e:
            logger.exception(f"   ✗ Unexpected error on {path.id} at {node_name}")
            self._fail_path(path, e)

        result.status = path.status
        result.error = path.error if path.status == PathStatus.FAILED else None
        result.error_type = path.error_type if path.status == PathStatus.FAILED else None
        return result

    async def _decide(
        self,
        path: ExecutionPath,
        snapshot: MachineSnapshot,
        permissions: dict[str, ContextPermission],
        classification: TransitionClassification,
        result: PathStepResult,
    ) -> None:
        surface = build_tool_surface(
            snapshot,
            path.current_node,
            classification,
            permissions,
            meta_tools=self.meta.get_meta_tools(),
            dynamic_tools=self.meta.get_dynamic_tools(),
        )
        candidates = classification.agent_decided

        if candidates and not surface.has_work_tools and all(c.is_async for c in candidates):
            for candidate in candidates:
                self._spawn(path, candidate, snapshot, f"Async edge to {candidate.target}")
            path.status = PathStatus.COMPLETED
            result.effect = EffectType.SPAWN
            logger.info(f"   ✓ {path.id} completed after spawning {len(candidates)} path(s)")
            return

        if len(candidates) == 1 and not surface.has_work_tools:
            result.transition = self._move(
                path,
                candidates[0],
                snapshot,
                TransitionKind.PASS_THROUGH,
                "Only one way forward",
            )
            result.effect = TransitionKind.PASS_THROUGH
            return

        tool_use = await self._ask_oracle(path, snapshot, permissions, classification, surface)
        result.effect = tool_use.name
        transition, output = await self._apply_effect(path, snapshot, surface, tool_use)
        result.transition = transition
        result.output = output

    async def _ask_oracle(
        self,
        path: ExecutionPath,
        snapshot: MachineSnapshot,
        permissions: dict[str, ContextPermission],
        classification: TransitionClassification,
        surface: ToolSurface,
    ) -> ToolUse:
        if self.oracle is None:
            raise OracleInvocationError(
                f"Decision required at '{path.current_node}' but no oracle is configured"
            )

        contexts = build_context_summaries(snapshot, permissions, self.state.context)
        role = build_role_description(
            snapshot,
            path.current_node,
            path,
            classification,
            contexts,
            meta=meta_enabled(snapshot, path.current_node),
        )
        request = DecisionRequest(
            run_id=self.state.run_id,
            path_id=path.id,
            node=path.current_node,
            system_prompt=compose_system_prompt(
                build_identity(snapshot), role, build_narrative(path)
            ),
            tools=surface.tools,
            contexts=contexts,
            transitions=describe_transitions(classification),
            conversation=list(path.conversation),
        )

        started = time.time()
        try:
            tool_use = await self.oracle.decide(request)
        except OracleInvocationError:
            raise
        except Exception as e:
            raise OracleInvocationError(f"Oracle failed at '{path.current_node}': {e}") from e
        latency_ms = int((time.time() - started) * 1000)

        if tool_use is None:
            raise OracleInvocationError(f"Oracle could not choose a tool at '{path.current_node}'")
        logger.info(
            f"   🔧 Oracle chose {tool_use.name}",
            extra={"tool_name": tool_use.name, "latency_ms": latency_ms},
        )
        return tool_use

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    async def _apply_effect(
        self,
        path: ExecutionPath,
        snapshot: MachineSnapshot,
        surface: ToolSurface,
        tool_use: ToolUse,
    ) -> tuple[Transition | None, Any]:
        """
        Apply the tool the oracle chose. Either fully applied or raises.

        Raises:
            EffectApplicationError: If the tool is not on the surface or cannot be applied
        """
        effect = surface.get(tool_use.name)
        if effect is None:
            raise EffectApplicationError(
                f"Tool '{tool_use.name}' is not available at '{path.current_node}' "
                f"(offered: {', '.join(surface.names())})"
            )
        tool_input = tool_use.input or {}
        transition = None
        output: Any = None

        if effect.type == EffectType.TRANSITION:
            transition = self._move(
                path,
                effect.candidate,
                snapshot,
                TransitionKind.AGENT,
                str(tool_input.get("reason", "")),
            )
            output = {"success": True, "to": transition.to_node}

        elif effect.type == EffectType.SPAWN:
            child = self._spawn(
                path, effect.candidate, snapshot, str(tool_input.get("reason", ""))
            )
            if tool_input.get("await_result") is True:
                path.status = PathStatus.WAITING
                path.awaiting = [child.id]
                logger.info(f"   ⏸ {path.id} waiting on {child.id}")
            output = {"success": True, "pathId": child.id}

        elif effect.type == EffectType.READ:
            output = self._read_context(snapshot, effect.target, effect.permission, tool_input)

        elif effect.type in (EffectType.WRITE, EffectType.STORE):
            data = tool_input.get("data")
            checked = self.validator.validate_write(
                data, effect.target, effect.permission, store=effect.type == EffectType.STORE
            )
            if not checked.success:
                raise EffectApplicationError(checked.error)
            self.state.context.setdefault(effect.target, {}).update(data)
            logger.info(f"   ✎ {path.id} wrote {', '.join(data)} to {effect.target}")
            output = {"success": True, "written": sorted(data)}

        elif effect.type == EffectType.META:
            output = await self.meta.handle(tool_use.name, tool_input)

        elif effect.type == EffectType.DYNAMIC:
            output = await self.meta.execute_dynamic_tool(tool_use.name, tool_input)

        path.conversation.append(
            {
                "role": "assistant",
                "tool_use": {"id": tool_use.id, "name": tool_use.name, "input": tool_input},
            }
        )
        path.conversation.append(
            {"role": "user", "tool_result": {"tool_use_id": tool_use.id, "content": output}}
        )
        return transition, output

    def _read_context(
        self,
        snapshot: MachineSnapshot,
        context_name: str,
        permission: ContextPermission,
        tool_input: dict[str, Any],
    ) -> dict[str, Any]:
        node = snapshot.get_node(context_name)
        values = dict(node.attrs()) if node is not None else {}
        values.update(self.state.context.get(context_name, {}))

        requested = tool_input.get("fields")
        if requested:
            denied = [f for f in requested if not permission.allows_field(f)]
            if denied:
                raise EffectApplicationError(
                    f"Fields not readable on '{context_name}': {', '.join(denied)}"
                )
            return {k: values.get(k) for k in requested}
        return {k: v for k, v in values.items() if permission.allows_field(k)}

    def _move(
        self,
        path: ExecutionPath,
        candidate: CandidateTransition,
        snapshot: MachineSnapshot,
        kind: TransitionKind,
        reason: str,
    ) -> Transition | None:
        """Move a path along a transition; an async edge spawns instead and ends the path."""
        if candidate.is_async:
            self._spawn(path, candidate, snapshot, reason)
            path.status = PathStatus.COMPLETED
            logger.info(f"   ✓ {path.id} handed off to an async path at {candidate.target}")
            return None

        target = candidate.resolved_target
        if snapshot.get_node(target) is None:
            raise EffectApplicationError(f"Transition target '{target}' does not exist")

        transition = Transition(
            from_node=path.current_node,
            to_node=target,
            kind=kind,
            reason=reason,
            via_modules=candidate.module_chain,
        )
        path.history.append(transition)
        path.conversation.append(build_transition_marker(path.current_node, target, reason))
        path.current_node = target
        path.visit_counts[target] = path.visit_counts.get(target, 0) + 1

        via = f" via {' / '.join(candidate.module_chain)}" if candidate.module_chain else ""
        logger.info(f"   → {transition.from_node} → {target}{via} ({kind}: {reason})")
        return transition

    def _spawn(
        self,
        parent: ExecutionPath,
        candidate: CandidateTransition,
        snapshot: MachineSnapshot,
        reason: str,
    ) -> ExecutionPath:
        target = candidate.resolved_target
        if snapshot.get_node(target) is None:
            raise EffectApplicationError(f"Spawn target '{target}' does not exist")

        child = ExecutionPath(
            id=self.state.new_path_id(),
            current_node=target,
            parent_path_id=parent.id,
            start_time=self.clock(),
            visit_counts={target: 1},
        )
        self.state.paths.append(child)
        logger.info(f"   ⑂ {parent.id} spawned {child.id} at {target} ({reason})")
        return child

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def _check_limits(self, path: ExecutionPath, now: float) -> None:
        limits = self.state.limits

        if path.step_count >= limits.max_steps:
            raise ResourceLimitExceeded(
                f"Path exceeded max steps ({limits.max_steps})", "max_steps", limits.max_steps
            )

        invocations = path.node_invocation_counts.get(path.current_node, 0)
        if invocations >= limits.max_node_invocations:
            raise ResourceLimitExceeded(
                f"Node '{path.current_node}' exceeded max invocations "
                f"({limits.max_node_invocations})",
                "max_node_invocations",
                limits.max_node_invocations,
            )

        elapsed = now - self.state.started_at
        if elapsed > limits.timeout_seconds:
            raise ResourceLimitExceeded(
                f"Run exceeded timeout ({limits.timeout_seconds}s, elapsed {elapsed:.1f}s)",
                "timeout",
                limits.timeout_seconds,
            )

    def _check_cycle(self, path: ExecutionPath) -> None:
        """Fail on a pattern repeating back-to-back at the end of the recent visit sequence."""
        window = self.state.limits.cycle_detection_window
        sequence = path.visited_sequence()[-(window + 1) :]
        if len(sequence) < 3:
            return

        for length in range(2, len(sequence) // 2 + 1):
            if sequence[-length:] == sequence[-2 * length : -length]:
                pattern = " → ".join(sequence[-length:])
                raise ResourceLimitExceeded(
                    f"Cycle detected: {pattern} repeated within the last {window} transitions",
                    "cycle",
                    window,
                )

    def _fail_path(self, path: ExecutionPath, error: Exception) -> None:
        path.status = PathStatus.FAILED
        path.error = str(error)
        path.error_type = type(error).__name__
        path.awaiting = []
        self.state.error_count += 1
        logger.error(
            f"   ✗ {path.id} failed at {path.current_node}: {error}",
            extra={"event": "path_failed", "path_status": str(path.status)},
        )

    # ------------------------------------------------------------------
    # Views, checkpoints, persistence
    # ------------------------------------------------------------------

    def node_visit_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for path in self.state.paths:
            for name, count in path.visit_counts.items():
                counts[name] = counts.get(name, 0) + count
        return counts

    def get_visualization_state(self) -> dict[str, Any]:
        return get_visualization_state(self.state)

    def get_path_statistics(self) -> dict[str, Any]:
        return get_path_statistics(self.state)

    def create_checkpoint(self, description: str = "") -> Checkpoint:
        """Capture the current state between steps."""
        checkpoint = Checkpoint.create(self.state, description)
        logger.info(f"💾 Checkpoint {checkpoint.checkpoint_id} at step {checkpoint.step_count}")
        return checkpoint

    def restore_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Replace the current state with a checkpointed copy and rebuild dynamic tools."""
        self.state = checkpoint.state.model_copy(deep=True)
        self.meta.bind(self.state)
        set_trace_context(run_id=self.state.run_id)
        logger.info(f"📥 Restored checkpoint {checkpoint.checkpoint_id}")

    def serialize(self) -> str:
        return serialize_state(self.state)

    @classmethod
    def from_serialized(
        cls,
        data: str | dict[str, Any],
        oracle: Oracle | None = None,
        **kwargs: Any,
    ) -> "MachineExecutor":
        """
        Resume a run from serialized state.

        Raises:
            ConfigurationError: If the payload is malformed or from another version
        """
        return cls(state=deserialize_state(data), oracle=oracle, **kwargs)
