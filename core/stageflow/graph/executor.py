"""
Execution Coordinator - Runs workflows stage by stage.

The coordinator:
1. Allocates a fresh RunContext (run id, tracer, orchestrator, results)
2. Builds the execution plan (cycle errors stop here)
3. For every stage, resolves configuration and drains the stage's nodes
   through the sequential scheduler
4. For every node: gating → port routing → backend call inside a span →
   result bookkeeping and pushes to the node update handler
5. Publishes every status change on the event bus and returns a RunResult
"""

import inspect
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stageflow.backend.protocol import NodeBackend, NodeExecutionRequest
from stageflow.graph.builder import ExecutionGraph
from stageflow.graph.edge import ConnectionSpec, WorkflowSpec
from stageflow.graph.errors import (
    AuthenticationError,
    BackendError,
    NodeExecutionError,
    PlanInvariantError,
    UnmanagedCycleError,
    WorkflowError,
)
from stageflow.graph.gating import GateOutcome, evaluate_gate
from stageflow.graph.node import NodeSpec, StepKind
from stageflow.graph.planner import ExecutionPlan, WorkflowDAG
from stageflow.graph.routing import assemble_inputs
from stageflow.graph.scheduler import PacingPolicy, SequentialScheduler
from stageflow.observability import clear_trace_context, set_trace_context
from stageflow.runtime.config_orchestrator import ConfigSnapshot
from stageflow.runtime.event_bus import EventBus
from stageflow.runtime.run_context import RunContext
from stageflow.runtime.tracer import TraceSummary
from stageflow.schemas.run import RunStatus, RunSummary
from stageflow.storage.trace_store import TraceStore

# Called with (node_id, merged node data); may be sync or async
NodeUpdateHandler = Callable[[str, dict[str, Any]], Any]


@dataclass
class RunResult:
    """Result of running a workflow."""

    run_id: str
    status: RunStatus = RunStatus.RUNNING
    results: dict[str, Any] = field(default_factory=dict)  # node id -> result
    executed: list[str] = field(default_factory=list)  # in execution order
    skipped: dict[str, str] = field(default_factory=dict)  # node id -> reason
    node_errors: dict[str, str] = field(default_factory=dict)
    plan: ExecutionPlan | None = None
    config_snapshots: list[ConfigSnapshot] = field(default_factory=list)
    trace: dict[str, Any] = field(default_factory=dict)
    trace_summary: TraceSummary | None = None
    error: str | None = None
    cycle_path: list[str] | None = None
    failed_node: str | None = None
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == RunStatus.FINISHED

    def to_summary(self) -> RunSummary:
        return RunSummary(
            run_id=self.run_id,
            status=self.status,
            started_at=self.started_at,
            duration_ms=self.duration_ms,
            total_nodes=self.plan.total_nodes if self.plan else 0,
            executed=list(self.executed),
            skipped=list(self.skipped),
            failed_node=self.failed_node,
            error=self.error,
        )


class ExecutionCoordinator:
    """
    Drives workflow runs against a node backend.

    Example:
        coordinator = ExecutionCoordinator(
            backend=HttpNodeBackend("http://localhost:3001"),
            event_bus=bus,
            on_node_update=canvas.update_node,
        )

        result = await coordinator.start(workflow)
    """

    def __init__(
        self,
        backend: NodeBackend,
        event_bus: EventBus | None = None,
        on_node_update: NodeUpdateHandler | None = None,
        pacing: PacingPolicy | None = None,
        trace_store: TraceStore | Path | str | None = None,
        base_config: dict[str, Any] | None = None,
    ):
        self.backend = backend
        self.event_bus = event_bus or EventBus()
        self.on_node_update = on_node_update
        self.pacing = pacing or PacingPolicy()
        if trace_store is not None and not isinstance(trace_store, TraceStore):
            trace_store = TraceStore(trace_store)
        self.trace_store = trace_store
        self.base_config = base_config
        self.last_result: RunResult | None = None
        self._active: RunContext | None = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_running(self) -> bool:
        return self._active is not None

    @property
    def active_run(self) -> RunContext | None:
        return self._active

    @property
    def current_node(self) -> str | None:
        return self._active.current_node if self._active else None

    # -------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------

    async def start(
        self,
        workflow: WorkflowSpec | Iterable[NodeSpec],
        connections: Iterable[ConnectionSpec] = (),
    ) -> RunResult:
        """Run a workflow to completion, failure, or stop.

        Args:
            workflow: a WorkflowSpec, or the node list when connections are
                passed separately
            connections: connections, when workflow is a node list

        Returns:
            RunResult describing the run. Failures are reported in the result
            and on the event bus, not raised.
        """
        if self._active is not None:
            raise WorkflowError(f"Run {self._active.run_id} is already in progress")

        if isinstance(workflow, WorkflowSpec):
            nodes, connections = list(workflow.nodes), list(workflow.connections)
        else:
            nodes, connections = list(workflow), list(connections)

        ctx = RunContext.create(nodes, base_config=self.base_config)
        self._active = ctx
        result = RunResult(run_id=ctx.run_id)
        set_trace_context(run_id=ctx.run_id)
        started = time.perf_counter()

        try:
            await self._run(ctx, nodes, connections, result)
        finally:
            result.duration_ms = (time.perf_counter() - started) * 1000
            result.results = dict(ctx.results)
            result.config_snapshots = ctx.orchestrator.snapshots
            result.trace = {
                **ctx.tracer.export(),
                "config_snapshots": [s.model_dump(mode="json") for s in result.config_snapshots],
            }
            result.trace_summary = ctx.tracer.summary()
            if self._active is ctx:
                self._active = None
            self.last_result = result
            await self._persist(result)
            clear_trace_context()

        return result

    async def stop(self) -> None:
        """Stop the active run at the next node boundary.

        A backend call already in flight is allowed to finish; no further
        node or stage starts afterwards.
        """
        ctx = self._active
        if ctx is not None:
            self.logger.info(f"⏹ Stopping run {ctx.run_id}")
            ctx.cancel()
            self._active = None
        await self.event_bus.emit_run_stopped(ctx.run_id if ctx else None)

    async def reset(self) -> None:
        """Stop any active run and discard its results."""
        ctx = self._active
        if ctx is not None:
            ctx.cancel()
            ctx.results.clear()
            self._active = None
        self.last_result = None
        self.logger.info("↺ Execution state reset")
        await self.event_bus.emit_run_reset()

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    async def _run(
        self,
        ctx: RunContext,
        nodes: list[NodeSpec],
        connections: list[ConnectionSpec],
        result: RunResult,
    ) -> None:
        bus = self.event_bus

        if not nodes:
            result.status = RunStatus.FAILED
            result.error = "No nodes to execute"
            self.logger.error(f"✗ {result.error}")
            await bus.emit_run_failed(ctx.run_id, result.error)
            return

        try:
            dag = WorkflowDAG(nodes, connections, run_id=ctx.run_id)
            plan = dag.create_execution_plan()
        except UnmanagedCycleError as e:
            result.status = RunStatus.CYCLE_DETECTED
            result.error = str(e)
            result.cycle_path = e.cycle_path
            self.logger.error(f"✗ {e}")
            await bus.emit_cycle_detected(ctx.run_id, str(e), e.cycle_path)
            return
        except PlanInvariantError as e:
            result.status = RunStatus.FAILED
            result.error = str(e)
            self.logger.error(f"✗ Planning failed: {e}")
            await bus.emit_run_failed(ctx.run_id, str(e))
            return

        result.plan = plan
        graph = dag.graph
        incoming: dict[str, list[ConnectionSpec]] = {node_id: [] for node_id in graph.nodes}
        for connection in graph.connections:
            if connection.source_id in graph.nodes and connection.target_id in graph.nodes:
                incoming[connection.target_id].append(connection)

        self.logger.info(
            f"🚀 Starting run {ctx.run_id}: {plan.total_nodes} nodes in {len(plan.stages)} stages"
        )
        await bus.emit_run_started(ctx.run_id, plan.total_nodes, len(plan.stages))

        scheduler = SequentialScheduler(self.pacing)
        for stage in plan.stages:
            if ctx.cancelled:
                break
            ctx.current_stage = stage.id
            set_trace_context(stage=stage.id)
            snapshot = ctx.orchestrator.resolve_conflicts(stage.id)

            async def run_node(node_id: str, snapshot: ConfigSnapshot = snapshot) -> bool:
                return await self._execute_node(ctx, graph, incoming, node_id, snapshot, result)

            scheduler.enqueue(stage.node_ids)
            try:
                await scheduler.drain(run_node, should_stop=lambda: ctx.cancelled)
            except NodeExecutionError as e:
                result.status = RunStatus.FAILED
                result.error = str(e)
                result.failed_node = e.node_id
                await bus.emit_run_failed(ctx.run_id, str(e))
                return

        if ctx.cancelled:
            result.status = RunStatus.STOPPED
            self.logger.info(f"⏹ Run {ctx.run_id} stopped after {len(result.executed)} nodes")
            return

        result.status = RunStatus.FINISHED
        self.logger.info(f"✓ Run {ctx.run_id} finished: {len(result.executed)} nodes executed")
        await bus.emit_run_finished(ctx.run_id, len(result.executed))

    async def _execute_node(
        self,
        ctx: RunContext,
        graph: ExecutionGraph,
        incoming: dict[str, list[ConnectionSpec]],
        node_id: str,
        snapshot: ConfigSnapshot,
        result: RunResult,
    ) -> bool:
        """Gate, route and execute one node. Returns True when the node ran."""
        node = graph.nodes[node_id]
        decision = evaluate_gate(node, ctx.node_data[node_id])

        if decision.outcome == GateOutcome.SKIP_SILENT:
            return False
        if decision.outcome == GateOutcome.SKIP_WARN:
            result.skipped[node_id] = decision.reason or "skipped"
            return False
        if decision.outcome == GateOutcome.SKIP_SIGNAL:
            result.skipped[node_id] = decision.reason or "skipped"
            self.logger.warning(f"⚠ Skipping {node_id}: {decision.message}")
            await self.event_bus.emit_node_skipped(
                ctx.run_id, node_id, decision.message or "", decision.reason or ""
            )
            return False
        if decision.outcome == GateOutcome.SELF_HEAL:
            merged = ctx.merge_node_data(node_id, decision.data)
            await self._notify_update(node_id, merged)

        ctx.current_node = node_id
        set_trace_context(node_id=node_id)
        try:
            await self.event_bus.emit_node_executing(ctx.run_id, node_id, snapshot.stage)

            inputs = assemble_inputs(
                incoming[node_id],
                ctx.results,
                {nid: n.capabilities for nid, n in graph.nodes.items()},
            )
            request = NodeExecutionRequest(
                type=node.type,
                payload=dict(ctx.node_data[node_id]),
                input_data=inputs,
                node_id=node_id,
                run_id=ctx.run_id,
                config=snapshot.effective_config,
            )
            self.logger.info(f"▶ {node_id} ({node.type}), inputs from {list(inputs)}")

            try:
                async with ctx.tracer.span(
                    f"execute-{node.type}",
                    node_id=node_id,
                    metadata={"stage": snapshot.stage, "inputs": list(inputs)},
                ):
                    output = await self.backend.execute(request)
            except BackendError as e:
                error = self._classify_failure(node, e)
                await self._report_failure(ctx, node_id, error, result)
                raise error from e
            except Exception as e:
                error = NodeExecutionError(str(e) or type(e).__name__, node_id=node_id)
                await self._report_failure(ctx, node_id, error, result)
                raise error from e

            ctx.results[node_id] = output
            result.executed.append(node_id)
            self.logger.info(f"✓ {node_id} completed")

            merged = ctx.merge_node_data(node_id, {"lastResult": output})
            await self._notify_update(node_id, merged)
            await self._apply_node_configurations(ctx, graph, output)
            self._submit_suggestions(ctx, node_id, output)
            await self._propagate_to_sinks(ctx, graph, node_id, output)

            await self.event_bus.emit_node_completed(ctx.run_id, node_id, output)
            return True
        finally:
            ctx.current_node = None
            set_trace_context(node_id=None)

    def _classify_failure(self, node: NodeSpec, error: BackendError) -> NodeExecutionError:
        service = node.capabilities.auth_service
        if error.status_code == 401 and service:
            return AuthenticationError(service, node_id=node.id, details=error.details)
        return NodeExecutionError(str(error), node_id=node.id, details=error.details)

    async def _report_failure(
        self,
        ctx: RunContext,
        node_id: str,
        error: NodeExecutionError,
        result: RunResult,
    ) -> None:
        result.node_errors[node_id] = str(error)
        self.logger.error(f"✗ {node_id} failed: {error}")
        await self.event_bus.emit_node_error(ctx.run_id, node_id, str(error))

    async def _apply_node_configurations(
        self,
        ctx: RunContext,
        graph: ExecutionGraph,
        output: Any,
    ) -> None:
        """Merge ``nodeConfigurations`` ({kind: config}) into every node of that kind."""
        configurations = output.get("nodeConfigurations") if isinstance(output, dict) else None
        if not isinstance(configurations, dict):
            return

        for kind_name, config in configurations.items():
            try:
                kind = StepKind(kind_name)
            except ValueError:
                self.logger.warning(f"⚠ Ignoring configuration for unknown kind '{kind_name}'")
                continue
            if not isinstance(config, dict):
                continue
            for target_id, target in graph.nodes.items():
                if target.type == kind:
                    merged = ctx.merge_node_data(target_id, config)
                    await self._notify_update(target_id, merged)
                    self.logger.info(f"   Configured {target_id} ({kind})")

    def _submit_suggestions(self, ctx: RunContext, node_id: str, output: Any) -> None:
        """Feed ``configSuggestions`` from a result into the orchestrator."""
        suggestions = output.get("configSuggestions") if isinstance(output, dict) else None
        if not isinstance(suggestions, list):
            return
        for suggestion in suggestions:
            if not isinstance(suggestion, dict):
                self.logger.warning(f"⚠ {node_id} returned a malformed configuration suggestion")
                continue
            ctx.orchestrator.add_suggestion({"source": node_id, **suggestion})

    async def _propagate_to_sinks(
        self,
        ctx: RunContext,
        graph: ExecutionGraph,
        node_id: str,
        output: Any,
    ) -> None:
        """Display-only nodes downstream of a completed node show its result."""
        for target_id in dict.fromkeys(graph.adjacency[node_id]):
            if graph.nodes[target_id].capabilities.is_sink:
                merged = ctx.merge_node_data(target_id, {"lastResult": output})
                await self._notify_update(target_id, merged)

    async def _notify_update(self, node_id: str, data: dict[str, Any]) -> None:
        if self.on_node_update is None:
            return
        try:
            ret = self.on_node_update(node_id, data)
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            self.logger.exception(f"Node update handler failed for {node_id}")

    async def _persist(self, result: RunResult) -> None:
        if self.trace_store is None:
            return
        try:
            await self.trace_store.save_run(result.to_summary(), result.trace)
        except OSError:
            self.logger.exception(f"Failed to save trace for {result.run_id}")
