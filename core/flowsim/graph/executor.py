"""
Simulator - walks a workflow graph against a sample payload.

The simulator:
1. Locates the single start node
2. Processes a frontier queue of (node, runtime context) pairs in discovery order
3. Renders each node's configuration into its effective input
4. Dispatches on the node type (pass-through stub, branch, fan-out, loop, end)
5. Records one log entry per executed step

Nothing external is called; action nodes produce deterministic stub outputs.
A failing step stops only its own path. Parallel branches and loop
iterations run on forked contexts and their log entries are merged in branch
(or iteration) index order, so the trace is reproducible.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowsim.config import SimulatorConfig
from flowsim.graph.conditions import ConditionError, evaluate_condition, evaluate_groups
from flowsim.graph.edge import (
    HANDLE_FALSE,
    HANDLE_TRUE,
    LOOP_OUTPUT,
    LOOP_START,
    Edge,
    parse_branch_handle,
)
from flowsim.graph.node import LoopMode, Node, NodeType
from flowsim.graph.safe_eval import SafeEvalError
from flowsim.graph.state import GraphState
from flowsim.graph.stubs import StepOutcome, duration_for, simulate_action
from flowsim.graph.variables import (
    UNDEFINED,
    GlobalVariable,
    RuntimeContext,
    materialize_config,
    parse_payload,
    resolve_reference,
)
from flowsim.observability import reset_trace_context, set_trace_context
from flowsim.schemas.execution import (
    AbortReason,
    ExecutionLogEntry,
    NodeExecutionStatus,
    RunResult,
    RunStatus,
    StepStatus,
)

STEP_ERRORS = (SafeEvalError, ConditionError)


@dataclass
class ParallelBranch:
    """Tracks one branch of a fan-out."""

    branch_id: str
    node_id: str
    edge: Edge
    index: int
    status: str = "pending"  # pending, completed, failed
    error: str | None = None


@dataclass
class WalkResult:
    """What one frontier walk (top level, branch, or loop iteration) produced."""

    entries: list[ExecutionLogEntry] = field(default_factory=list)
    last_output: Any = UNDEFINED
    last_context: RuntimeContext | None = None
    duration_ms: int = 0
    error: str | None = None

    def extend(self, other: "WalkResult") -> None:
        self.entries.extend(other.entries)
        if other.last_output is not UNDEFINED:
            self.last_output = other.last_output
            self.last_context = other.last_context
        if other.error and not self.error:
            self.error = other.error


@dataclass
class _RunState:
    """Mutable bookkeeping shared by every walk of one run."""

    run_id: str
    max_steps: int
    steps: int = 0
    exhausted: bool = False
    status_map: dict[str, NodeExecutionStatus] = field(default_factory=dict)
    node_outputs: dict[str, Any] = field(default_factory=dict)
    start_warnings: list[str] = field(default_factory=list)

    def take_step(self) -> bool:
        if self.steps >= self.max_steps:
            self.exhausted = True
            return False
        self.steps += 1
        return True


class Simulator:
    """
    Executes a workflow graph in simulation.

    Usage:
        simulator = Simulator()
        result = await simulator.run(nodes, edges, {"amount": 8500})
        for entry in result.log:
            print(entry.node_label, entry.status, entry.output)
    """

    def __init__(self, config: SimulatorConfig | None = None):
        self.config = config or SimulatorConfig()
        self.logger = logging.getLogger(__name__)

    def run_sync(self, *args: Any, **kwargs: Any) -> RunResult:
        return asyncio.run(self.run(*args, **kwargs))

    async def run(
        self,
        nodes: Iterable[Node],
        edges: Iterable[Edge],
        input_payload: Any = None,
        *,
        workflow_id: str = "",
        global_variables: Sequence[GlobalVariable] = (),
    ) -> RunResult:
        """
        Simulate the graph.

        Args:
            nodes: Graph nodes (a snapshot is taken)
            edges: Graph edges
            input_payload: JSON text or a decoded value; defaults to the start
                node's development input, then the configured default payload
            workflow_id: Exposed to nodes as ``system.workflow_id``
            global_variables: Exposed to nodes as ``global.<name>``

        Returns:
            RunResult with the ordered log, status map and node outputs.
            This method does not raise.
        """
        run_id = f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        token = set_trace_context(run_id=run_id, workflow_id=workflow_id)
        try:
            return await self._simulate(
                run_id, nodes, edges, input_payload, workflow_id, global_variables
            )
        finally:
            reset_trace_context(token)

    async def _simulate(
        self,
        run_id: str,
        nodes: Iterable[Node],
        edges: Iterable[Edge],
        input_payload: Any,
        workflow_id: str,
        global_variables: Sequence[GlobalVariable],
    ) -> RunResult:
        graph = GraphState(nodes=list(nodes), edges=list(edges))
        started_at = datetime.now()

        starts = graph.start_nodes()
        if len(starts) != 1:
            reason = AbortReason.NO_START_NODE if not starts else AbortReason.MULTIPLE_START_NODES
            self.logger.warning(f"✗ Cannot simulate: {reason} ({len(starts)} start nodes)")
            return RunResult(
                run_id=run_id,
                workflow_id=workflow_id,
                status=RunStatus.ABORTED,
                abort_reason=reason,
                error=f"Expected exactly one start node, found {len(starts)}",
                started_at=started_at,
                completed_at=datetime.now(),
            )
        start = starts[0]

        state = _RunState(run_id=run_id, max_steps=self.config.max_steps)
        payload = self._resolve_payload(start, input_payload, state.start_warnings)
        context = RuntimeContext(
            payload=payload,
            system={
                "timestamp": started_at.isoformat(),
                "workflow_id": workflow_id,
                "execution_id": run_id,
            },
            global_values={v.name: v.default_value for v in global_variables},
        )

        self.logger.info(
            f"🚀 Starting simulation {run_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )

        try:
            walk = await self._walk(graph, state, [(start.id, context)], scope=None)
        except Exception as e:
            self.logger.error(f"Simulation crashed: {e}", exc_info=True)
            return RunResult(
                run_id=run_id,
                workflow_id=workflow_id,
                status=RunStatus.ABORTED,
                error=str(e),
                status_map=dict(state.status_map),
                node_outputs=dict(state.node_outputs),
                steps_executed=state.steps,
                started_at=started_at,
                completed_at=datetime.now(),
            )

        status = RunStatus.COMPLETED
        abort_reason = None
        if state.exhausted:
            status = RunStatus.ABORTED
            abort_reason = AbortReason.STEP_BUDGET_EXHAUSTED
            self.logger.warning(f"✗ Step budget of {state.max_steps} exhausted, run aborted")

        result = RunResult(
            run_id=run_id,
            workflow_id=workflow_id,
            status=status,
            abort_reason=abort_reason,
            log=walk.entries,
            status_map=dict(state.status_map),
            node_outputs=dict(state.node_outputs),
            steps_executed=state.steps,
            started_at=started_at,
            completed_at=datetime.now(),
        )
        self.logger.info(
            f"✓ Simulation finished: {len(result.log)} entries, "
            f"{result.failed_steps} failed, status={status}"
        )
        return result

    def _resolve_payload(self, start: Node, input_payload: Any, warnings: list[str]) -> Any:
        """Explicit input, then the start node's dev input, then the default payload."""
        if input_payload is None:
            dev_input = getattr(start.config, "dev_input", "")
            if not dev_input.strip():
                return json.loads(json.dumps(self.config.default_payload))
            input_payload = dev_input
        if isinstance(input_payload, str):
            payload, error = parse_payload(input_payload)
            if error:
                warnings.append(f"{error}; passing raw text through")
            return payload
        return input_payload

    # -------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------

    async def _walk(
        self,
        graph: GraphState,
        state: _RunState,
        seeds: list[tuple[str, RuntimeContext]],
        scope: str | None,
        loop_index: int | None = None,
    ) -> WalkResult:
        """Breadth-first walk from ``seeds``, confined to nodes owned by ``scope``."""
        result = WalkResult()
        queue = deque(seeds)

        while queue:
            node_id, context = queue.popleft()
            node = graph.get_node(node_id)
            if node is None or node.parent_id != scope:
                continue
            if not state.take_step():
                break

            entries, outcome = await self._execute_node(graph, state, node, context, loop_index)
            result.entries.extend(entries)
            result.duration_ms += outcome.duration_ms
            if not outcome.success:
                result.error = result.error or outcome.error
                continue

            next_context = context.with_output(node.id, outcome.output)
            result.last_output = outcome.output
            result.last_context = next_context

            if node.type == NodeType.END:
                self.logger.info(f"   ✓ Reached end node: {node.display_name()}")
                continue

            if node.type == NodeType.PARALLEL:
                fork = await self._fan_out(graph, state, node, next_context, scope, loop_index)
                result.extend(fork)
                result.duration_ms += fork.duration_ms
                continue

            for edge in self._next_edges(graph, node, outcome):
                queue.append((edge.target, next_context))

        return result

    def _next_edges(self, graph: GraphState, node: Node, outcome: StepOutcome) -> list[Edge]:
        outgoing = graph.get_outgoing_edges(node.id)
        match node.type:
            case NodeType.CONDITION:
                handle = HANDLE_TRUE if outcome.output.get("result") else HANDLE_FALSE
                return [e for e in outgoing if e.source_handle == handle]
            case NodeType.LOOP:
                return [e for e in outgoing if e.source_handle in (LOOP_OUTPUT, None)]
            case _:
                return [e for e in outgoing if e.source_handle != LOOP_START]

    async def _fan_out(
        self,
        graph: GraphState,
        state: _RunState,
        node: Node,
        context: RuntimeContext,
        scope: str | None,
        loop_index: int | None,
    ) -> WalkResult:
        """Run every ``branch-i`` edge as an independent walk on its own context copy."""
        branches: list[ParallelBranch] = []
        for edge in graph.get_outgoing_edges(node.id):
            index = parse_branch_handle(edge.source_handle)
            if index is None:
                continue
            branches.append(
                ParallelBranch(
                    branch_id=f"{edge.source}_to_{edge.target}",
                    node_id=edge.target,
                    edge=edge,
                    index=index,
                )
            )
        branches.sort(key=lambda b: b.index)

        self.logger.info(f"   ⑂ Fan-out: executing {len(branches)} branches in parallel")

        async def execute_single_branch(branch: ParallelBranch) -> WalkResult:
            walk = await self._walk(graph, state, [(branch.node_id, context)], scope, loop_index)
            branch.status = "failed" if walk.error else "completed"
            branch.error = walk.error
            return walk

        walks = await asyncio.gather(*(execute_single_branch(b) for b in branches))

        merged = WalkResult()
        for branch, walk in zip(branches, walks, strict=True):
            merged.extend(walk)
            merged.duration_ms = max(merged.duration_ms, walk.duration_ms)
            if branch.status == "failed":
                self.logger.warning(
                    f"   ✗ Branch {branch.index} ({branch.branch_id}) failed: {branch.error}"
                )
        return merged

    # -------------------------------------------------------------------
    # Node dispatch
    # -------------------------------------------------------------------

    async def _execute_node(
        self,
        graph: GraphState,
        state: _RunState,
        node: Node,
        context: RuntimeContext,
        loop_index: int | None,
    ) -> tuple[list[ExecutionLogEntry], StepOutcome]:
        """Execute one node. Returns its log entries (body entries first for loops)."""
        set_trace_context(node_id=node.id)
        step_number = state.steps
        state.status_map[node.id] = NodeExecutionStatus.RUNNING
        self.logger.info(f"▶ Step {step_number}: {node.display_name()} ({node.type})")
        # Yield so sibling branches interleave like real concurrent work.
        await asyncio.sleep(0)

        entries: list[ExecutionLogEntry] = []
        warnings: list[str] = []
        effective: dict[str, Any] = {}
        try:
            effective, warnings = materialize_config(node.config, context)
            match node.type:
                case NodeType.START:
                    outcome = StepOutcome(
                        output=context.payload,
                        duration_ms=duration_for(NodeType.START),
                        log_input=context.payload,
                        warnings=list(state.start_warnings),
                    )
                case NodeType.END:
                    outcome = self._end(node, context)
                case NodeType.CONDITION:
                    matched = evaluate_condition(node.config, context)
                    outcome = StepOutcome(
                        output={
                            "result": matched,
                            "next_path": HANDLE_TRUE if matched else HANDLE_FALSE,
                        },
                        duration_ms=duration_for(NodeType.CONDITION),
                        log_input={
                            "expression": node.config.expression,
                            "condition_groups": effective.get("condition_groups", []),
                            "data": context.payload,
                        },
                    )
                case NodeType.PARALLEL:
                    outcome = StepOutcome(
                        output={"branches": list(node.config.branches)},
                        duration_ms=duration_for(NodeType.PARALLEL),
                    )
                case NodeType.LOOP:
                    entries, outcome = await self._run_loop(graph, state, node, context)
                case _:
                    outcome = simulate_action(node, effective, context)
        except STEP_ERRORS as e:
            outcome = StepOutcome(output=None, error=str(e))
        except Exception as e:
            self.logger.error(f"   ✗ Step {node.id}: exception - {e}", exc_info=True)
            outcome = StepOutcome(output=None, error=str(e))

        outcome.warnings = warnings + outcome.warnings
        entry = ExecutionLogEntry(
            step_id=f"step-{step_number:04d}-{node.id}",
            node_id=node.id,
            node_label=node.display_name(),
            node_type=node.type.value,
            status=StepStatus.SUCCESS if outcome.success else StepStatus.FAILED,
            input=outcome.log_input if outcome.log_input is not None else effective,
            output=outcome.output,
            error_message=outcome.error,
            duration_ms=outcome.duration_ms,
            loop_index=loop_index,
            warnings=outcome.warnings,
        )
        entries.append(entry)

        state.node_outputs[node.id] = outcome.output
        if outcome.success:
            state.status_map[node.id] = NodeExecutionStatus.SUCCESS
            self.logger.info(f"   ✓ Success ({outcome.duration_ms}ms)")
        else:
            state.status_map[node.id] = NodeExecutionStatus.FAILED
            self.logger.error(f"   ✗ Failed: {outcome.error}")
        for warning in outcome.warnings:
            self.logger.warning(f"   ⚠ {warning}")
        return entries, outcome

    def _end(self, node: Node, context: RuntimeContext) -> StepOutcome:
        """Collect the configured outputs, or pass the payload through."""
        outputs = node.config.outputs
        if not outputs:
            return StepOutcome(
                output=context.payload,
                duration_ms=duration_for(NodeType.END),
                log_input=context.payload,
            )
        tree = context.value_tree()
        collected: dict[str, Any] = {}
        warnings: list[str] = []
        for item in outputs:
            if not item.key or not item.value:
                continue
            value = resolve_reference(item.value, tree)
            if value is UNDEFINED:
                warnings.append(f"Unresolved variable '{item.value}' for output '{item.key}'")
                value = None
            collected[item.key] = value
        return StepOutcome(
            output=collected,
            duration_ms=duration_for(NodeType.END),
            log_input=context.payload,
            warnings=warnings,
        )

    # -------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------

    def _loop_seeds(self, graph: GraphState, loop: Node) -> list[str]:
        """Entry points of a loop body: ``loop-start`` targets, else unwired children."""
        children = {c.id for c in graph.children_of(loop.id)}
        seeds = [
            e.target
            for e in graph.get_outgoing_edges(loop.id)
            if e.source_handle == LOOP_START and e.target in children
        ]
        if seeds:
            return seeds
        wired = {e.target for e in graph.edges if e.source in children and e.target in children}
        return [c.id for c in graph.children_of(loop.id) if c.id not in wired]

    def _iteration_result(self, loop: Node, walk: WalkResult, item: Any, index: int) -> Any:
        if walk.error:
            return {"item": item, "index": index, "error": walk.error}
        export_path = loop.config.export_output.strip()
        if export_path and walk.last_context is not None:
            value = resolve_reference(export_path, walk.last_context.value_tree())
            if value is not UNDEFINED:
                return value
        if walk.last_output is not UNDEFINED:
            return walk.last_output
        return {"item": item, "index": index}

    async def _run_loop(
        self,
        graph: GraphState,
        state: _RunState,
        node: Node,
        context: RuntimeContext,
    ) -> tuple[list[ExecutionLogEntry], StepOutcome]:
        config = node.config
        target_path = config.target_array.strip()
        items = resolve_reference(target_path, context.value_tree()) if target_path else UNDEFINED
        log_input = {
            "mode": str(config.mode),
            "concurrency": config.concurrency if config.mode == LoopMode.ITERATION else None,
            "target_array": target_path,
            "array_length": len(items) if isinstance(items, list) else 0,
        }

        if not isinstance(items, list):
            shown = "undefined" if items is UNDEFINED else json.dumps(items, default=str)
            return [], StepOutcome(
                output={"error": "Invalid Array"},
                log_input=log_input,
                error=f"Loop target is not an array: {target_path or '(empty)'} = {shown}",
            )

        seeds = self._loop_seeds(graph, node)
        if not graph.children_of(node.id):
            return [], StepOutcome(
                output={"message": "No child nodes found in loop"},
                log_input=log_input,
            )

        self.logger.info(f"   ↻ Loop over {len(items)} item(s) in {config.mode} mode")

        entries: list[ExecutionLogEntry] = []
        results: list[Any] = []
        duration = 0
        failed_iterations = 0

        if config.mode == LoopMode.ITERATION:
            width = max(1, min(config.concurrency, self.config.loop_concurrency))
            for chunk_start in range(0, len(items), width):
                chunk = items[chunk_start : chunk_start + width]
                walks = await asyncio.gather(
                    *(
                        self._walk(
                            graph,
                            state,
                            [
                                (seed, context.push_loop(item, chunk_start + offset, node.id))
                                for seed in seeds
                            ],
                            scope=node.id,
                            loop_index=chunk_start + offset,
                        )
                        for offset, item in enumerate(chunk)
                    )
                )
                for offset, walk in enumerate(walks):
                    entries.extend(walk.entries)
                    results.append(
                        self._iteration_result(node, walk, chunk[offset], chunk_start + offset)
                    )
                    failed_iterations += 1 if walk.error else 0
                duration += max((w.duration_ms for w in walks), default=0)
        else:
            for index, item in enumerate(items):
                if state.exhausted:
                    break
                frame = context.push_loop(item, index, node.id)
                terminate = config.termination_conditions and evaluate_groups(
                    config.termination_conditions, frame
                )
                if terminate:
                    self.logger.info(f"   ↻ Loop terminated by condition at index {index}")
                    entries.append(
                        ExecutionLogEntry(
                            step_id=f"step-{state.steps:04d}-{node.id}-terminated",
                            node_id=node.id,
                            node_label=f"{node.display_name()} (terminated)",
                            node_type=node.type.value,
                            input={"termination": "triggered", "index": index},
                            output={
                                "message": "Loop stopped by termination condition",
                                "stopped_at_index": index,
                            },
                            loop_index=index,
                        )
                    )
                    break
                walk = await self._walk(
                    graph,
                    state,
                    [(seed, frame) for seed in seeds],
                    scope=node.id,
                    loop_index=index,
                )
                entries.extend(walk.entries)
                results.append(self._iteration_result(node, walk, item, index))
                failed_iterations += 1 if walk.error else 0
                duration += walk.duration_ms

        outcome = StepOutcome(output={"result": results}, duration_ms=duration, log_input=log_input)
        if failed_iterations:
            outcome.warnings.append(f"{failed_iterations} iteration(s) had a failed step")
        return entries, outcome

