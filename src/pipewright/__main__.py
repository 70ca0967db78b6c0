"""Pipewright CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from pathlib import Path

from pipewright.config import load_config, load_pipeline_file
from pipewright.errors import ConfigError, PipelineLoadError
from pipewright.pipeline.engine import (
    EXIT_CANCELLED,
    EXIT_LOAD_ERROR,
    EXIT_SUCCESS,
    PipelineEngine,
    exit_code_for,
)
from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.models import EventKind, PipelineRunResult, RunContext, RunStatus
from pipewright.pipeline.registry import RunRegistry
from pipewright.pipeline.scheduler import ExecutionDescriptor, JobExecutor, JobOutcome

logger = logging.getLogger("pipewright.cli")


# ── Executors ────────────────────────────────────────────────────────────────


class DryRunExecutor:
    """Logs each dispatch and reports success without running anything."""

    async def __call__(self, descriptor: ExecutionDescriptor) -> JobOutcome:
        scope = descriptor.environment.scope if descriptor.environment else None
        logger.info(
            "[dry-run] %s matrix=%s environment=%s inputs=%s",
            descriptor.instance_id,
            descriptor.matrix,
            scope,
            sorted(descriptor.inputs),
        )
        return JobOutcome(success=True)


def load_executor(target: str) -> JobExecutor:
    """Resolve ``module:attribute`` to a job executor.

    Classes are instantiated with no arguments.

    Raises:
        ConfigError: If the target cannot be imported or is not callable.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Executor must be given as module:attribute, got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import executor module '{module_name}': {exc}") from exc
    obj = getattr(module, attr, None)
    if obj is None:
        raise ConfigError(f"Module '{module_name}' has no attribute '{attr}'")
    if isinstance(obj, type):
        obj = obj()
    if not callable(obj):
        raise ConfigError(f"Executor {target!r} is not callable")
    return obj


# ── Commands ─────────────────────────────────────────────────────────────────


def _validate(args: argparse.Namespace) -> int:
    definition = load_pipeline_file(args.pipeline)
    graph = PipelineGraph.build(definition)
    print(f"Pipeline '{definition.name}': {len(definition.jobs)} jobs, {len(graph)} instances")
    for inst in graph.topological_order():
        needs = ", ".join(inst.spec.needs)
        suffix = f"  (needs: {needs})" if needs else ""
        print(f"  {inst.id}{suffix}")
    return EXIT_SUCCESS


def _context_from_args(args: argparse.Namespace) -> RunContext:
    return RunContext(
        event=EventKind(args.event),
        ref=args.ref,
        repository=args.repository,
        workflow=args.workflow or "",
        sha=args.sha,
        base_ref=args.base_ref,
        changed_paths=frozenset(args.changed or []),
        release_tag=args.release_tag,
    )


async def _run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.max_parallel is not None:
        config.max_parallel_jobs = max(0, args.max_parallel)
    database = args.database or config.database

    definition = load_pipeline_file(args.pipeline)
    if not args.workflow:
        args.workflow = definition.name
    context = _context_from_args(args)
    executor = load_executor(args.executor) if args.executor else DryRunExecutor()

    registry = await RunRegistry.open(database) if database else None
    try:
        engine = PipelineEngine(config, executor, registry=registry)
        result = await engine.run(definition, context)
    finally:
        if registry is not None:
            await registry.close()

    _print_result(result)
    return exit_code_for(result)


async def _history(args: argparse.Namespace) -> int:
    registry = await RunRegistry.open(args.database)
    try:
        status = RunStatus(args.status) if args.status else None
        runs = await registry.list_runs(
            pipeline_name=args.pipeline_name, status=status, limit=args.limit
        )
    finally:
        await registry.close()
    for run in runs:
        created = run.created_at.isoformat(timespec="seconds") if run.created_at else "-"
        print(f"{run.run_id}  {run.pipeline_name:<20} {run.status.value:<14} {created}")
    return EXIT_SUCCESS


def _print_result(result: PipelineRunResult) -> None:
    print(f"Pipeline '{result.pipeline_name}' run {result.run_id}: {result.status.value}")
    for instance_id, job in result.jobs.items():
        marker = " (best-effort)" if job.best_effort else ""
        detail = f": {job.error_message}" if job.error_message else ""
        print(f"  {instance_id:<40} {job.state.value}{marker}{detail}")


# ── Argument parsing ─────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipewright",
        description="Pipewright — CI/CD pipeline orchestration engine",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # pipewright validate
    validate_parser = subparsers.add_parser("validate", help="Validate a pipeline definition")
    validate_parser.add_argument("pipeline", type=Path, help="Pipeline YAML file")

    # pipewright run
    run_parser = subparsers.add_parser("run", help="Run a pipeline for one trigger event")
    run_parser.add_argument("pipeline", type=Path, help="Pipeline YAML file")
    run_parser.add_argument(
        "--event",
        default=EventKind.PUSH.value,
        choices=[e.value for e in EventKind],
        help="Trigger event (default: push)",
    )
    run_parser.add_argument("--ref", default="refs/heads/main", help="Git ref (default: refs/heads/main)")
    run_parser.add_argument("--repository", default="", help="Repository, e.g. org/repo")
    run_parser.add_argument("--workflow", help="Workflow name (default: pipeline name)")
    run_parser.add_argument("--sha", default="", help="Commit SHA")
    run_parser.add_argument("--base-ref", help="Pull request target branch")
    run_parser.add_argument(
        "--changed",
        action="append",
        metavar="PATH",
        help="Changed path (repeatable). Omit for runs without a changed-path set",
    )
    run_parser.add_argument("--release-tag", help="Release tag for release-published events")
    run_parser.add_argument("--config", type=Path, help="Engine config YAML (default: built-in)")
    run_parser.add_argument(
        "--executor",
        metavar="MODULE:ATTR",
        help="Job executor to load (default: dry-run executor)",
    )
    run_parser.add_argument("--max-parallel", type=int, help="Worker slots (0 = unbounded)")
    run_parser.add_argument("--database", help="SQLite path for run history")

    # pipewright history
    history_parser = subparsers.add_parser("history", help="List recorded pipeline runs")
    history_parser.add_argument("--database", required=True, help="SQLite path for run history")
    history_parser.add_argument("--pipeline-name", help="Only runs of this pipeline")
    history_parser.add_argument(
        "--status", choices=[s.value for s in RunStatus], help="Only runs with this status"
    )
    history_parser.add_argument("--limit", type=int, default=20, help="Max runs (default: 20)")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_LOAD_ERROR)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        if args.command == "validate":
            code = _validate(args)
        elif args.command == "history":
            code = asyncio.run(_history(args))
        else:
            code = asyncio.run(_run(args))
    except (ConfigError, PipelineLoadError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_LOAD_ERROR)
    except KeyboardInterrupt:
        print("Interrupted: run cancelled", file=sys.stderr)
        sys.exit(EXIT_CANCELLED)

    sys.exit(code)


if __name__ == "__main__":
    main()
