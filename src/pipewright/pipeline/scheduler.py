"""Execution scheduler — drives job instances of one run to completion.

Per-instance state machine::

    Pending → Blocked → Ready → Running → Succeeded | Failed | Cancelled
       └──────────┴───────→ Skipped

One asyncio task per instance waits for its dependencies' terminal events
(Blocked), then for a worker slot (Ready). A semaphore bounds how many
instances are Running at once. An instance never starts before every
dependency is terminal; mutually-ready instances run in no particular order.

Cancellation is cooperative: the collaborator sees ``cancel_event`` set and
has ``cancel_grace_seconds`` to return before its task is cancelled. The
instance is recorded Cancelled either way and any late result is ignored.

Key exports:
    ExecutionScheduler, ExecutionDescriptor, JobOutcome, JobExecutor
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from pipewright.errors import UnknownEnvironment
from pipewright.pipeline.concurrency import ConcurrencyCoordinator, render_group_key
from pipewright.pipeline.environments import EnvironmentBindings, EnvironmentProvisioner
from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.models import (
    ExecutionPolicy,
    JobInstance,
    JobResult,
    JobState,
    PathFilterPolicy,
    RunContext,
    RunStatus,
)

logger = logging.getLogger("pipewright.pipeline.scheduler")


# ── Collaborator interface ───────────────────────────────────────────────────


@dataclass
class ExecutionDescriptor:
    """Everything the external collaborator gets for one dispatch."""

    run_id: str
    instance_id: str
    job_name: str
    context: RunContext
    cancel_event: asyncio.Event
    matrix: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    environment: EnvironmentBindings | None = None
    needs: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class JobOutcome:
    """Exit status plus optional structured output."""

    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    message: str | None = None


class JobExecutor(Protocol):
    """Called by the scheduler to execute one job instance."""

    async def __call__(self, descriptor: ExecutionDescriptor) -> JobOutcome | bool | int:
        """Run the job. A bare ``int`` is an exit code (0 = success)."""
        ...


SupersededCallback = Callable[[set[str]], Awaitable[None]]
JobStartCallback = Callable[[JobInstance], None]
JobFinishCallback = Callable[[JobResult], None]


def _coerce_outcome(raw: Any) -> JobOutcome:
    if isinstance(raw, JobOutcome):
        return raw
    if isinstance(raw, bool):
        return JobOutcome(success=raw)
    if isinstance(raw, int):
        return JobOutcome(success=raw == 0, message=None if raw == 0 else f"exit status {raw}")
    msg = f"Executor returned unsupported result type {type(raw).__name__}"
    raise TypeError(msg)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Scheduler ────────────────────────────────────────────────────────────────


class ExecutionScheduler:
    """Runs one pipeline graph against one run context.

    Usage:
        scheduler = ExecutionScheduler(graph, context, executor, run_id="run-1")
        results = await scheduler.run()
        status = ExecutionScheduler.overall_status(results, scheduler.cancelled)
    """

    def __init__(
        self,
        graph: PipelineGraph,
        context: RunContext,
        executor: JobExecutor,
        *,
        run_id: str,
        provisioner: EnvironmentProvisioner | None = None,
        policy: ExecutionPolicy | None = None,
        path_filter: PathFilterPolicy | None = None,
        max_parallel: int = 4,
        cancel_grace_seconds: float = 30.0,
        coordinator: ConcurrencyCoordinator | None = None,
        on_superseded: SupersededCallback | None = None,
        on_job_start: JobStartCallback | None = None,
        on_job_finish: JobFinishCallback | None = None,
    ):
        self.graph = graph
        self.context = context
        self.run_id = run_id
        self._executor = executor
        self._provisioner = provisioner or EnvironmentProvisioner({}, context)
        self._policy = policy or ExecutionPolicy()
        self._path_filter = path_filter or PathFilterPolicy()
        self._grace = cancel_grace_seconds
        self._coordinator = coordinator
        self._on_superseded = on_superseded
        self._on_job_start = on_job_start
        self._on_job_finish = on_job_finish

        # Worker slots (None = unbounded)
        self._slots: asyncio.Semaphore | None = (
            asyncio.Semaphore(max_parallel) if max_parallel > 0 else None
        )

        size = len(graph)
        self._done = [asyncio.Event() for _ in range(size)]
        self._results: dict[int, JobResult] = {}
        self._started_at: dict[int, datetime] = {}
        self._drivers: dict[int, asyncio.Task] = {}
        self._executions: dict[int, asyncio.Task] = {}
        self._cancel_events: dict[int, asyncio.Event] = {}
        self._occupants: dict[int, str] = {}
        self._cancelled = False
        self._running = False

    # ── Public API ───────────────────────────────────────────────────────────

    @property
    def cancelled(self) -> bool:
        """True once the whole run was cancelled."""
        return self._cancelled

    def state_of(self, instance_id: str) -> JobState:
        return self.graph.get(instance_id).state

    async def run(self) -> dict[str, JobResult]:
        """Drive every instance to a terminal state and return the results."""
        if self._running:
            msg = f"Run {self.run_id} is already being scheduled"
            raise RuntimeError(msg)
        self._running = True

        # Conditions over the run context alone are decided up front
        for idx, inst in enumerate(self.graph.instances):
            condition = self.graph.condition_for(inst.name)
            if condition is not None and not condition.references_needs:
                if not self._condition_holds(inst):
                    self._finish(idx, JobState.SKIPPED, "condition not met")

        for idx, inst in enumerate(self.graph.instances):
            if not inst.is_terminal and not self._cancelled:
                self._drivers[idx] = asyncio.create_task(
                    self._drive(idx), name=f"{self.run_id}:{inst.id}"
                )

        try:
            await asyncio.gather(*self._drivers.values(), return_exceptions=True)
        except asyncio.CancelledError:
            await self.cancel("scheduler task cancelled")
            raise
        finally:
            self._provisioner.close()

        # Anything left non-terminal was interrupted before it could finish
        for idx, inst in enumerate(self.graph.instances):
            if not inst.is_terminal:
                self._finish(idx, JobState.CANCELLED, "run interrupted")

        return self.results()

    def results(self) -> dict[str, JobResult]:
        """Terminal results so far, in arena order."""
        return {
            self.graph.instances[idx].id: self._results[idx]
            for idx in sorted(self._results)
        }

    async def cancel(self, reason: str = "run cancelled") -> None:
        """Cancel every non-terminal instance of this run."""
        if self._cancelled:
            return
        self._cancelled = True
        logger.info("Cancelling run %s: %s", self.run_id, reason)
        pending = [idx for idx, inst in enumerate(self.graph.instances) if not inst.is_terminal]
        await self._cancel_nodes(pending, reason)

    async def cancel_instance(self, instance_id: str, reason: str = "cancelled") -> None:
        """Cancel one instance and, transitively, everything that depends on it."""
        start = self.graph.index_of(instance_id)
        forward = [self.graph.index_of(i.id) for i in self.graph.transitive_dependents(instance_id)]
        nodes = [
            idx for idx in [start, *forward] if not self.graph.instances[idx].is_terminal
        ]
        if nodes:
            logger.info(
                "Cancelling %s and %d dependent(s) in run %s: %s",
                instance_id,
                len(forward),
                self.run_id,
                reason,
            )
            await self._cancel_nodes(nodes, reason)

    @staticmethod
    def overall_status(results: dict[str, JobResult], cancelled: bool = False) -> RunStatus:
        """Failed if any required instance failed or was cancelled.

        Skipped instances and best-effort failures do not affect the status.
        """
        if cancelled:
            return RunStatus.CANCELLED
        for result in results.values():
            if result.state in (JobState.FAILED, JobState.CANCELLED) and not result.best_effort:
                return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    # ── Driver ───────────────────────────────────────────────────────────────

    async def _drive(self, idx: int) -> None:
        """Advance one instance; always leaves it terminal so dependents wake."""
        try:
            await self._advance(idx)
        except asyncio.CancelledError:
            self._finish(idx, JobState.CANCELLED, "cancelled")
            raise
        except Exception as exc:
            logger.exception(
                "Scheduler error for job %s (run %s)", self.graph.instances[idx].id, self.run_id
            )
            self._finish(idx, JobState.FAILED, f"scheduler error: {exc}")
        finally:
            occupant = self._occupants.pop(idx, None)
            if occupant is not None and self._coordinator is not None:
                await self._coordinator.release(occupant)

    async def _advance(self, idx: int) -> None:
        inst = self.graph.instances[idx]
        deps = self.graph.dependencies[idx]
        if inst.is_terminal:
            return

        if deps:
            inst.transition(JobState.BLOCKED)
            await asyncio.gather(*(self._done[d].wait() for d in deps))
            if inst.is_terminal:
                return
            blocker = self._blocking_dependency(idx)
            if blocker is not None:
                self._finish(
                    idx,
                    JobState.SKIPPED,
                    f"dependency '{blocker.id}' {blocker.state.value}",
                )
                return

        condition = self.graph.condition_for(inst.name)
        if condition is not None and condition.references_needs:
            if not self._condition_holds(inst):
                self._finish(idx, JobState.SKIPPED, "condition not met")
                return

        inst.transition(JobState.READY)
        await self._enter_job_group(idx)
        async with self._slots or contextlib.nullcontext():
            if inst.is_terminal:
                return
            await self._execute(idx)

    async def _execute(self, idx: int) -> None:
        inst = self.graph.instances[idx]
        spec = inst.spec
        inst.transition(JobState.RUNNING)
        self._started_at[idx] = _now()
        logger.info("Job %s started (run %s)", inst.id, self.run_id)
        self._notify(self._on_job_start, inst)

        bindings: EnvironmentBindings | None = None
        if spec.environment:
            try:
                bindings = self._provisioner.resolve(spec.environment)
            except UnknownEnvironment as exc:
                logger.error("Job %s failed: %s (run %s)", inst.id, exc, self.run_id)
                self._finish(idx, JobState.FAILED, str(exc))
                return

        cancel_event = asyncio.Event()
        self._cancel_events[idx] = cancel_event
        descriptor = ExecutionDescriptor(
            run_id=self.run_id,
            instance_id=inst.id,
            job_name=inst.name,
            context=self.context,
            cancel_event=cancel_event,
            matrix=inst.matrix_values,
            inputs=dict(spec.with_),
            env=dict(self.graph.definition.env),
            environment=bindings,
            needs=self._needs_view(idx),
        )

        task = asyncio.create_task(self._executor(descriptor), name=f"exec:{inst.id}")
        self._executions[idx] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._executions.pop(idx, None)
            self._cancel_events.pop(idx, None)

        if inst.is_terminal:
            logger.info("Ignoring late result of cancelled job %s (run %s)", inst.id, self.run_id)
            return
        if task.cancelled():
            self._finish(idx, JobState.CANCELLED, "execution cancelled")
            return

        exc = task.exception()
        if exc is not None:
            logger.error(
                "Job %s raised an exception (run %s)", inst.id, self.run_id, exc_info=exc
            )
            self._finish(idx, JobState.FAILED, f"{type(exc).__name__}: {exc}")
            return

        try:
            outcome = _coerce_outcome(task.result())
        except TypeError as err:
            self._finish(idx, JobState.FAILED, str(err))
            return

        state = JobState.SUCCEEDED if outcome.success else JobState.FAILED
        self._finish(idx, state, outcome.message, outputs=outcome.outputs)

    # ── Transitions ──────────────────────────────────────────────────────────

    def _finish(
        self,
        idx: int,
        state: JobState,
        message: str | None = None,
        *,
        outputs: dict[str, Any] | None = None,
    ) -> bool:
        inst = self.graph.instances[idx]
        if inst.is_terminal:
            return False
        inst.transition(state)
        self._results[idx] = JobResult(
            instance_id=inst.id,
            job_name=inst.name,
            matrix=inst.matrix_values,
            state=state,
            best_effort=inst.spec.best_effort,
            outputs=outputs or {},
            error_message=message if state != JobState.SUCCEEDED else None,
            started_at=self._started_at.get(idx),
            completed_at=_now(),
        )
        self._done[idx].set()

        log = logger.warning if state == JobState.FAILED else logger.info
        if message and state != JobState.SUCCEEDED:
            log("Job %s %s: %s (run %s)", inst.id, state.value, message, self.run_id)
        else:
            log("Job %s %s (run %s)", inst.id, state.value, self.run_id)
        self._notify(self._on_job_finish, self._results[idx])
        return True

    def _blocking_dependency(self, idx: int) -> JobInstance | None:
        """The first dependency that prevents ``idx`` from becoming Ready."""
        for dep_idx in self.graph.dependencies[idx]:
            dep = self.graph.instances[dep_idx]
            state = dep.state
            if state == JobState.SUCCEEDED:
                continue
            if state == JobState.FAILED and dep.spec.best_effort:
                if not self._policy.best_effort_failure_blocks:
                    continue
            if state == JobState.SKIPPED and dep.spec.best_effort:
                if not self._policy.best_effort_skip_blocks:
                    continue
            return dep
        return None

    async def _cancel_nodes(self, nodes: list[int], reason: str) -> None:
        running = [idx for idx in nodes if self.graph.instances[idx].state == JobState.RUNNING]
        for idx in nodes:
            self._finish(idx, JobState.CANCELLED, reason)

        for idx in nodes:
            driver = self._drivers.get(idx)
            if driver is not None and idx not in running and not driver.done():
                driver.cancel()

        executions = []
        for idx in running:
            event = self._cancel_events.get(idx)
            if event is not None:
                event.set()
            task = self._executions.get(idx)
            if task is not None and not task.done():
                executions.append(task)

        if not executions:
            return
        _, pending = await asyncio.wait(executions, timeout=self._grace)
        if pending:
            logger.warning(
                "Force-terminating %d job(s) that ignored cancellation (run %s)",
                len(pending),
                self.run_id,
            )
            for task in pending:
                task.cancel()
            _, stuck = await asyncio.wait(pending, timeout=self._grace)
            if stuck:
                # Abandon the execution so its driver can finish
                logger.error(
                    "Abandoning %d job(s) that did not stop after cancellation (run %s)",
                    len(stuck),
                    self.run_id,
                )
                for idx in running:
                    driver = self._drivers.get(idx)
                    if self._executions.get(idx) in stuck and driver is not None and not driver.done():
                        driver.cancel()

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _notify(self, callback: Callable[[Any], None] | None, payload: Any) -> None:
        """Call a job hook. Hook errors are logged and never affect scheduling."""
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            logger.exception("Job hook %r failed (run %s)", callback, self.run_id)

    def _condition_holds(self, inst: JobInstance) -> bool:
        condition = self.graph.condition_for(inst.name)
        if condition is None:
            return True
        needs = self._needs_view(self.graph.index_of(inst.id)) if condition.references_needs else {}
        return condition.evaluate(
            self.context,
            matrix=inst.matrix_values,
            needs=needs,
            empty_changes_match=self._path_filter.empty_changes_match,
        )

    def _needs_view(self, idx: int) -> dict[str, dict[str, Any]]:
        """Aggregate dependency results per job name."""
        view: dict[str, dict[str, Any]] = {}
        for dep_name in self.graph.instances[idx].spec.needs:
            states: list[JobState] = []
            outputs: dict[str, Any] = {}
            for dep in self.graph.instances_of(dep_name):
                states.append(dep.state)
                result = self._results.get(self.graph.index_of(dep.id))
                if result is not None:
                    outputs.update(result.outputs)
            view[dep_name] = {"result": _aggregate(states).value, "outputs": outputs}
        return view

    async def _enter_job_group(self, idx: int) -> None:
        """Occupy the job's concurrency group, if it declares one."""
        inst = self.graph.instances[idx]
        spec = inst.spec.concurrency
        if spec is None or self._coordinator is None:
            return
        group = render_group_key(spec.group, self.context)
        occupant = f"{self.run_id}/{inst.id}"
        if spec.cancel_in_progress:
            superseded = await self._coordinator.register(group, occupant)
            self._occupants[idx] = occupant
            if superseded and self._on_superseded is not None:
                await self._on_superseded(superseded)
        else:
            await self._coordinator.wait_turn(group, occupant)
            self._occupants[idx] = occupant


def _aggregate(states: list[JobState]) -> JobState:
    if any(s == JobState.FAILED for s in states):
        return JobState.FAILED
    if any(s == JobState.CANCELLED for s in states):
        return JobState.CANCELLED
    if states and all(s == JobState.SKIPPED for s in states):
        return JobState.SKIPPED
    if any(s == JobState.SUCCEEDED for s in states):
        return JobState.SUCCEEDED
    return JobState.PENDING
