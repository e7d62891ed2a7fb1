"""CLI commands for validating, planning and running workflow files."""

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from stageflow.backend import HttpNodeBackend, LocalNodeBackend, NodeBackend, echo_handler
from stageflow.config import EngineConfig
from stageflow.graph.errors import PlanInvariantError, UnmanagedCycleError
from stageflow.graph.executor import ExecutionCoordinator
from stageflow.graph.planner import create_execution_plan
from stageflow.graph.scheduler import PacingPolicy
from stageflow.observability import configure_logging
from stageflow.runner.loader import load_workflow
from stageflow.runtime.event_bus import EventBus, ExecutionEvent, ExecutionEventType

logger = logging.getLogger(__name__)


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register validate, plan and run."""
    validate_parser = subparsers.add_parser("validate", help="Check a workflow file for problems")
    validate_parser.add_argument("workflow", help="Path to workflow JSON")
    validate_parser.set_defaults(func=cmd_validate)

    plan_parser = subparsers.add_parser("plan", help="Print the staged execution plan")
    plan_parser.add_argument("workflow", help="Path to workflow JSON")
    plan_parser.add_argument("--json", action="store_true", help="Output the plan as JSON")
    plan_parser.set_defaults(func=cmd_plan)

    run_parser = subparsers.add_parser("run", help="Execute a workflow")
    run_parser.add_argument("workflow", help="Path to workflow JSON")
    run_parser.add_argument("--backend-url", help="Node execution server URL")
    run_parser.add_argument("--pacing-ms", type=int, help="Pause between nodes in milliseconds")
    run_parser.add_argument("--trace-dir", help="Directory to store run traces in")
    run_parser.add_argument(
        "--api-key",
        action="append",
        default=[],
        metavar="SERVICE=KEY",
        help="Service API key passed to the backend (repeatable)",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Echo inputs in-process instead of calling the execution server",
    )
    run_parser.set_defaults(func=cmd_run)


def _load(path: str):
    try:
        return load_workflow(path)
    except FileNotFoundError:
        print(f"Workflow not found: {path}", file=sys.stderr)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON in {path}: {e}", file=sys.stderr)
    except ValidationError as e:
        print(f"Invalid workflow {path}:\n{e}", file=sys.stderr)
    return None


def cmd_validate(args: argparse.Namespace) -> int:
    workflow = _load(args.workflow)
    if workflow is None:
        return 1

    errors = workflow.validate()
    try:
        create_execution_plan(workflow.nodes, workflow.connections)
    except (UnmanagedCycleError, PlanInvariantError) as e:
        errors.append(str(e))

    if errors:
        print(f"✗ {len(errors)} problems:")
        for err in errors:
            print(f"  • {err}")
        return 1
    print(f"✓ {len(workflow.nodes)} nodes, {len(workflow.connections)} connections")
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    workflow = _load(args.workflow)
    if workflow is None:
        return 1

    try:
        plan = create_execution_plan(workflow.nodes, workflow.connections)
    except (UnmanagedCycleError, PlanInvariantError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
        return 0

    for stage in plan.stages:
        print(f"{stage.id}: {', '.join(stage.node_ids)}")
    print(f"start nodes: {', '.join(plan.start_nodes) or '(none)'}")
    if plan.managed_loop_edges:
        loops = ", ".join(f"{s} → {t}" for s, t in sorted(plan.managed_loop_edges))
        print(f"managed loops: {loops}")
    return 0


def _parse_api_keys(pairs: list[str]) -> dict[str, str]:
    keys = {}
    for pair in pairs:
        service, sep, key = pair.partition("=")
        if not sep or not service:
            raise ValueError(f"Expected SERVICE=KEY, got '{pair}'")
        keys[service] = key
    return keys


async def _print_event(event: ExecutionEvent) -> None:
    node = f" {event.node_id}" if event.node_id else ""
    detail = event.data.get("error") or ""
    print(f"[{event.type}]{node} {detail}".rstrip())


def cmd_run(args: argparse.Namespace) -> int:
    config = EngineConfig()
    configure_logging(level=config.log_level)

    workflow = _load(args.workflow)
    if workflow is None:
        return 1

    try:
        api_keys = {**config.api_keys, **_parse_api_keys(args.api_key)}
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1

    pacing = config.pacing_delay if args.pacing_ms is None else args.pacing_ms / 1000
    trace_dir = args.trace_dir or config.trace_dir

    bus = EventBus()
    bus.subscribe(list(ExecutionEventType), _print_event)

    async def _run() -> int:
        backend: NodeBackend
        if args.dry_run:
            backend = LocalNodeBackend(fallback=echo_handler)
        else:
            backend = HttpNodeBackend(
                args.backend_url or config.backend_url,
                timeout=config.backend_timeout,
                api_keys=api_keys,
            )
        coordinator = ExecutionCoordinator(
            backend=backend,
            event_bus=bus,
            pacing=PacingPolicy(delay_seconds=pacing),
            trace_store=trace_dir,
        )
        try:
            result = await coordinator.start(workflow)
        finally:
            if isinstance(backend, HttpNodeBackend):
                await backend.aclose()

        print(json.dumps(result.to_summary().model_dump(mode="json"), indent=2))
        return 0 if result.success else 1

    return asyncio.run(_run())
