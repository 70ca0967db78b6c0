"""Pipeline engine — runs a pipeline definition for one trigger event.

Control flow of :meth:`PipelineEngine.run`:

1. Build and validate the :class:`PipelineGraph` (fail fast, before any job).
2. Check the pipeline's triggers against the run context.
3. Register the run in its concurrency group; cancel superseded runs.
4. Schedule every job instance to completion.
5. Release the group and persist the result.

Key exports:
    PipelineEngine — Main engine class with run(), cancel_run(), load().
    exit_code_for — Maps a run result to the process exit code.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pipewright.pipeline.concurrency import ConcurrencyCoordinator, render_group_key
from pipewright.pipeline.environments import EnvironmentProvisioner, SecretSource
from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.models import (
    JobState,
    PipelineDefinition,
    PipelineRunResult,
    RunContext,
    RunStatus,
)
from pipewright.pipeline.scheduler import (
    ExecutionScheduler,
    JobExecutor,
    JobFinishCallback,
    JobStartCallback,
)

if TYPE_CHECKING:
    from pipewright.config import EngineConfig
    from pipewright.pipeline.registry import RunRegistry

logger = logging.getLogger("pipewright.pipeline.engine")

EXIT_SUCCESS = 0
EXIT_JOB_FAILURE = 1
EXIT_LOAD_ERROR = 2
EXIT_CANCELLED = 3


def exit_code_for(result: PipelineRunResult) -> int:
    """Process exit code for a finished run."""
    match result.status:
        case RunStatus.SUCCEEDED | RunStatus.NOT_TRIGGERED:
            return EXIT_SUCCESS
        case RunStatus.CANCELLED:
            return EXIT_CANCELLED
        case _:
            return EXIT_JOB_FAILURE


class PipelineEngine:
    """Orchestrates pipeline runs.

    Usage:
        engine = PipelineEngine(config, executor)
        result = await engine.run(definition, context)
        sys.exit(exit_code_for(result))

    Engines that share a :class:`ConcurrencyCoordinator` see each other's
    group occupancy, but each engine can only cancel the runs it is driving.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        executor: JobExecutor | None = None,
        *,
        coordinator: ConcurrencyCoordinator | None = None,
        registry: RunRegistry | None = None,
        secret_source: SecretSource | None = None,
        on_job_start: JobStartCallback | None = None,
        on_job_finish: JobFinishCallback | None = None,
    ):
        if config is None:
            from pipewright.config import EngineConfig

            config = EngineConfig()
        self._config = config
        self._executor = executor
        self._coordinator = coordinator or ConcurrencyCoordinator()
        self._registry = registry
        self._secret_source = secret_source
        self._on_job_start = on_job_start
        self._on_job_finish = on_job_finish

        # Runs currently being scheduled (run_id → scheduler)
        self._schedulers: dict[str, ExecutionScheduler] = {}
        # Cancellations of superseded runs still winding down
        self._background: set[asyncio.Task] = set()

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def coordinator(self) -> ConcurrencyCoordinator:
        return self._coordinator

    def set_executor(self, executor: JobExecutor) -> None:
        """Set the collaborator that executes job instances."""
        self._executor = executor

    def load(self, definition: PipelineDefinition) -> PipelineGraph:
        """Validate a definition into an executable graph.

        Raises:
            PipelineLoadError: On any condition, dependency, cycle, or matrix error.
        """
        return PipelineGraph.build(definition)

    def is_triggered(self, definition: PipelineDefinition, context: RunContext) -> bool:
        """Check whether ``context`` activates the pipeline."""
        return definition.is_triggered_by(context, **self._config.path_filter.model_dump())

    def active_runs(self) -> list[str]:
        return sorted(self._schedulers)

    # ── Run Lifecycle ────────────────────────────────────────────────────────

    async def run(
        self,
        definition: PipelineDefinition,
        context: RunContext,
        *,
        run_id: str | None = None,
    ) -> PipelineRunResult:
        """Execute ``definition`` for one trigger event.

        Raises:
            PipelineLoadError: Before any job starts, if the definition is invalid.
            RuntimeError: If no executor is configured.
            ValueError: If ``run_id`` contains ``/``.
        """
        if self._executor is None:
            msg = "No job executor configured"
            raise RuntimeError(msg)
        if run_id is not None and "/" in run_id:
            # Job-level group occupants are "run_id/instance_id"
            msg = f"run_id must not contain '/': {run_id!r}"
            raise ValueError(msg)

        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        result = PipelineRunResult(
            run_id=run_id,
            pipeline_name=definition.name,
            status=RunStatus.PENDING,
            context=context,
            created_at=datetime.now(timezone.utc),
        )

        graph = self.load(definition)

        if not self.is_triggered(definition, context):
            logger.info(
                "Pipeline '%s' not triggered by %s on '%s'",
                definition.name,
                context.event.value,
                context.ref,
            )
            result.status = RunStatus.NOT_TRIGGERED
            result.completed_at = datetime.now(timezone.utc)
            await self._persist(result)
            return result

        scheduler = ExecutionScheduler(
            graph,
            context,
            self._executor,
            run_id=run_id,
            provisioner=EnvironmentProvisioner(
                self._config.environments, context, self._secret_source
            ),
            policy=self._config.policy,
            path_filter=self._config.path_filter,
            max_parallel=self._config.max_parallel_jobs,
            cancel_grace_seconds=self._config.cancel_grace_seconds,
            coordinator=self._coordinator,
            on_superseded=self._cancel_superseded,
            on_job_start=self._on_job_start,
            on_job_finish=self._on_job_finish,
        )
        self._schedulers[run_id] = scheduler
        result.status = RunStatus.RUNNING
        logger.info(
            "Started pipeline '%s' run %s (%s on '%s', %d job instances)",
            definition.name,
            run_id,
            context.event.value,
            context.ref,
            len(graph),
        )

        try:
            if definition.concurrency is not None:
                group = render_group_key(definition.concurrency.group, context)
                result.concurrency_group = group
                if definition.concurrency.cancel_in_progress:
                    superseded = await self._coordinator.register(group, run_id)
                    await self._cancel_superseded(superseded)
                else:
                    await self._coordinator.wait_turn(group, run_id)

            jobs = await scheduler.run()
        finally:
            self._schedulers.pop(run_id, None)
            if result.concurrency_group is not None:
                await self._coordinator.release(run_id)

        result.jobs = jobs
        result.status = ExecutionScheduler.overall_status(jobs, scheduler.cancelled)
        result.completed_at = datetime.now(timezone.utc)
        if result.status == RunStatus.FAILED:
            failed = [
                jid
                for jid, r in jobs.items()
                if r.state in (JobState.FAILED, JobState.CANCELLED) and not r.best_effort
            ]
            result.error_message = f"Failed jobs: {', '.join(failed)}"

        log = logger.error if result.status == RunStatus.FAILED else logger.info
        log("Pipeline '%s' run %s %s", definition.name, run_id, result.status.value)
        await self._persist(result)
        return result

    async def cancel_run(self, run_id: str, reason: str = "cancelled") -> bool:
        """Cancel a run driven by this engine. Returns True if it was active."""
        scheduler = self._schedulers.get(run_id)
        if scheduler is None:
            return False
        await scheduler.cancel(reason)
        return True

    async def _cancel_superseded(self, occupants: set[str]) -> None:
        """Start cancelling runs (or single job instances) displaced from a concurrency group.

        The cancellations run in the background so the newer occupant does not
        wait out the older one's grace period.
        """
        for occupant in sorted(occupants):
            run_id, _, instance_id = occupant.partition("/")
            scheduler = self._schedulers.get(run_id)
            if scheduler is None:
                logger.info("Superseded occupant %s is not driven by this engine", occupant)
                continue
            if instance_id:
                coro = scheduler.cancel_instance(instance_id, "superseded by a newer run")
            else:
                coro = scheduler.cancel("superseded by a newer run")
            task = asyncio.create_task(coro)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _persist(self, result: PipelineRunResult) -> None:
        if self._registry is None:
            return
        await self._registry.save_run(result)
