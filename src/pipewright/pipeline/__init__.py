"""Pipeline orchestration — definitions, graph, scheduling, concurrency.

Key exports:
    PipelineEngine — Runs a pipeline for one trigger event
    PipelineGraph — Validated DAG of expanded job instances
    ExecutionScheduler — Drives job instances to completion
    ConcurrencyCoordinator — Cross-run concurrency groups
    EnvironmentProvisioner — Scope-keyed secret/variable bindings
    RunRegistry — SQLite run history
    PipelineDefinition, JobSpec, RunContext — Definition and input models
"""

from pipewright.pipeline.concurrency import ConcurrencyCoordinator, render_group_key
from pipewright.pipeline.conditions import Condition, evaluate, parse_condition
from pipewright.pipeline.engine import (
    EXIT_CANCELLED,
    EXIT_JOB_FAILURE,
    EXIT_LOAD_ERROR,
    EXIT_SUCCESS,
    PipelineEngine,
    exit_code_for,
)
from pipewright.pipeline.environments import (
    EnvironmentBindings,
    EnvironmentProvisioner,
    EnvironmentScope,
    EnvSecretSource,
    SecretSource,
    StaticSecretSource,
)
from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.matrix import expand_job, instance_id
from pipewright.pipeline.models import (
    ConcurrencySpec,
    EventKind,
    ExecutionPolicy,
    JobInstance,
    JobResult,
    JobSpec,
    JobState,
    MatrixStrategy,
    PathFilterPolicy,
    PipelineDefinition,
    PipelineRunResult,
    RunContext,
    RunStatus,
    TriggerSpec,
)
from pipewright.pipeline.registry import RunRegistry
from pipewright.pipeline.scheduler import (
    ExecutionDescriptor,
    ExecutionScheduler,
    JobExecutor,
    JobOutcome,
)

__all__ = [
    # Engine
    "PipelineEngine",
    "exit_code_for",
    "EXIT_SUCCESS",
    "EXIT_JOB_FAILURE",
    "EXIT_LOAD_ERROR",
    "EXIT_CANCELLED",
    # Graph
    "PipelineGraph",
    "expand_job",
    "instance_id",
    # Conditions
    "Condition",
    "evaluate",
    "parse_condition",
    # Scheduler
    "ExecutionScheduler",
    "ExecutionDescriptor",
    "JobExecutor",
    "JobOutcome",
    # Concurrency
    "ConcurrencyCoordinator",
    "render_group_key",
    # Environments
    "EnvironmentBindings",
    "EnvironmentProvisioner",
    "EnvironmentScope",
    "EnvSecretSource",
    "SecretSource",
    "StaticSecretSource",
    # Registry
    "RunRegistry",
    # Models
    "ConcurrencySpec",
    "EventKind",
    "ExecutionPolicy",
    "JobInstance",
    "JobResult",
    "JobSpec",
    "JobState",
    "MatrixStrategy",
    "PathFilterPolicy",
    "PipelineDefinition",
    "PipelineRunResult",
    "RunContext",
    "RunStatus",
    "TriggerSpec",
]
