"""Pipeline Pydantic models — definitions and runtime state.

Key exports:
    Definition models: PipelineDefinition, JobSpec, MatrixStrategy,
        ConcurrencySpec, TriggerSpec
    Run input: RunContext, EventKind
    Policies: ExecutionPolicy, PathFilterPolicy
    Runtime state models: JobInstance, JobState, JobResult, RunStatus,
        PipelineRunResult
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ── Enums ────────────────────────────────────────────────────────────────────


class EventKind(str, Enum):
    """Trigger events that start a pipeline run."""

    PUSH = "push"
    PULL_REQUEST = "pull-request"
    MERGE_QUEUE = "merge-queue"
    RELEASE_PUBLISHED = "release-published"
    MANUAL_DISPATCH = "manual-dispatch"


class JobState(str, Enum):
    """Job instance lifecycle states."""

    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED, JobState.SKIPPED}
)


class RunStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_TRIGGERED = "not_triggered"


# ── Policies ─────────────────────────────────────────────────────────────────


class ExecutionPolicy(BaseModel):
    """How best-effort dependencies gate their dependents.

    A required dependency that fails, is skipped, or is cancelled always
    skips its dependents. A cancelled dependency always blocks.
    """

    best_effort_failure_blocks: bool = False
    best_effort_skip_blocks: bool = False


class PathFilterPolicy(BaseModel):
    """How changed-path filters apply to triggers and conditions."""

    skip_when_only_ignored: bool = True
    empty_changes_match: bool = True  # runs without a changed-path set are never filtered


# ── Job name validation ──────────────────────────────────────────────────────

JOB_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")

Scalar = Union[str, int, float, bool]


def path_matches(path: str, patterns: list[str] | tuple[str, ...]) -> bool:
    """Return True if ``path`` matches any of the glob ``patterns``."""
    return any(fnmatchcase(path, pattern) for pattern in patterns)


# ── Run input ────────────────────────────────────────────────────────────────


class RunContext(BaseModel):
    """Attributes of the trigger event. Immutable once a run starts."""

    model_config = ConfigDict(frozen=True)

    event: EventKind
    ref: str = ""
    repository: str = ""
    workflow: str = ""
    sha: str = ""
    base_ref: str | None = None  # Target branch of a pull request
    changed_paths: frozenset[str] = frozenset()
    release_tag: str | None = None

    @property
    def branch(self) -> str | None:
        """Branch name for ``refs/heads/...`` refs, otherwise None."""
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return None


# ── Definition Models ────────────────────────────────────────────────────────


class TriggerSpec(BaseModel):
    """Which events activate the pipeline."""

    events: list[EventKind] = Field(min_length=1)
    branches: list[str] = []
    paths_ignore: list[str] = []

    def matches(
        self,
        context: RunContext,
        *,
        skip_when_only_ignored: bool = True,
        empty_changes_match: bool = True,
    ) -> bool:
        """Check if a run context matches this trigger."""
        if context.event not in self.events:
            return False

        if self.branches:
            target = context.branch
            if context.event == EventKind.PULL_REQUEST and context.base_ref:
                target = context.base_ref.removeprefix("refs/heads/")
            if target is None or not path_matches(target, self.branches):
                return False

        if self.paths_ignore and skip_when_only_ignored:
            if not context.changed_paths:
                return empty_changes_match
            if all(path_matches(p, self.paths_ignore) for p in context.changed_paths):
                return False

        return True


class MatrixStrategy(BaseModel):
    """Matrix axes for a job. Axis declaration order is preserved."""

    axes: dict[str, list[Scalar]] = Field(min_length=1)
    exclude: list[dict[str, Scalar]] = []

    @model_validator(mode="after")
    def validate_excludes(self) -> MatrixStrategy:
        for entry in self.exclude:
            unknown = set(entry) - set(self.axes)
            if unknown:
                msg = f"Matrix exclude references unknown axes: {sorted(unknown)}"
                raise ValueError(msg)
        return self


class ConcurrencySpec(BaseModel):
    """Concurrency group for a pipeline or a single job."""

    group: str
    cancel_in_progress: bool = True


class JobSpec(BaseModel):
    """A single job in a pipeline definition."""

    name: str = ""
    display_name: str | None = None
    needs: list[str] = []
    condition: str | None = Field(None, alias="if")
    strategy: MatrixStrategy | None = None
    environment: str | None = None
    concurrency: ConcurrencySpec | None = None
    best_effort: bool = False
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def validate_job(self) -> JobSpec:
        if self.name and not JOB_NAME_PATTERN.match(self.name):
            msg = f"Job name '{self.name}' must match pattern {JOB_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        dupes = sorted({n for n in self.needs if self.needs.count(n) > 1})
        if dupes:
            msg = f"Job '{self.name}': duplicate needs {dupes}"
            raise ValueError(msg)
        return self

    @property
    def title(self) -> str:
        return self.display_name or self.name


class PipelineDefinition(BaseModel):
    """Complete pipeline definition (mapping of job name → JobSpec)."""

    name: str = "pipeline"
    description: str = ""
    triggers: list[TriggerSpec] = []
    concurrency: ConcurrencySpec | None = None
    env: dict[str, str] = {}
    jobs: dict[str, JobSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_job_names(self) -> PipelineDefinition:
        for key, job in self.jobs.items():
            if not job.name:
                job.name = key
                if not JOB_NAME_PATTERN.match(key):
                    msg = f"Job name '{key}' must match pattern {JOB_NAME_PATTERN.pattern}"
                    raise ValueError(msg)
            elif job.name != key:
                msg = f"Job keyed '{key}' declares a different name '{job.name}'"
                raise ValueError(msg)
        return self

    def get_job(self, name: str) -> JobSpec | None:
        """Look up a job by name."""
        return self.jobs.get(name)

    def is_triggered_by(self, context: RunContext, **policy: bool) -> bool:
        """True if any trigger matches. No triggers accepts every event."""
        if not self.triggers:
            return True
        return any(t.matches(context, **policy) for t in self.triggers)


# ── Runtime State Models ─────────────────────────────────────────────────────


class JobInstance(BaseModel):
    """A JobSpec resolved against one matrix combination."""

    spec: JobSpec
    matrix: tuple[tuple[str, Scalar], ...] = ()
    id: str
    state: JobState = JobState.PENDING

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def matrix_values(self) -> dict[str, Scalar]:
        return dict(self.matrix)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, state: JobState) -> None:
        """Move to ``state``. Terminal instances never change again."""
        if self.state.is_terminal:
            msg = f"Job instance '{self.id}' is already {self.state.value}"
            raise RuntimeError(msg)
        self.state = state


class JobResult(BaseModel):
    """Terminal outcome of a single job instance."""

    instance_id: str
    job_name: str
    matrix: dict[str, Scalar] = {}
    state: JobState
    best_effort: bool = False
    outputs: dict[str, Any] = {}
    error_message: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PipelineRunResult(BaseModel):
    """Outcome of one pipeline run."""

    run_id: str
    pipeline_name: str
    status: RunStatus = RunStatus.PENDING
    context: RunContext
    concurrency_group: str | None = None
    jobs: dict[str, JobResult] = {}

    created_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    def jobs_in_state(self, state: JobState) -> list[str]:
        return [jid for jid, r in self.jobs.items() if r.state == state]
