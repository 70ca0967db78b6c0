"""Error classes for pipewright.

Load-time errors (subclasses of :class:`PipelineLoadError`) are fatal and
abort a run before any job starts. :class:`UnknownEnvironment` is local to
the job instance that requested the scope and becomes a Failed result.
"""

from __future__ import annotations


class PipewrightError(Exception):
    """Base exception for pipewright."""


class ConfigError(PipewrightError):
    """The engine configuration file is missing or invalid."""


class PipelineLoadError(PipewrightError):
    """A pipeline definition cannot be turned into an executable graph."""


class ConditionSyntaxError(PipelineLoadError):
    """A condition expression does not parse."""

    def __init__(
        self,
        expression: str,
        position: int,
        reason: str,
        *,
        job: str | None = None,
    ):
        self.expression = expression
        self.position = position
        self.reason = reason
        self.job = job
        super().__init__(self._render())

    def _render(self) -> str:
        where = f"job '{self.job}': " if self.job else ""
        pointer = " " * self.position + "^"
        return (
            f"{where}invalid condition at position {self.position}: {self.reason}\n"
            f"    {self.expression}\n"
            f"    {pointer}"
        )

    def for_job(self, job: str) -> ConditionSyntaxError:
        """Return a copy of this error attributed to ``job``."""
        return ConditionSyntaxError(self.expression, self.position, self.reason, job=job)


class UnknownDependency(PipelineLoadError):
    """A job ``needs`` a job that does not exist."""

    def __init__(self, job: str, dependency: str, known: list[str] | None = None):
        self.job = job
        self.dependency = dependency
        self.known = sorted(known or [])
        super().__init__(
            f"Job '{job}' needs unknown job '{dependency}'. Known jobs: {self.known}"
        )


class CyclicDependency(PipelineLoadError):
    """The ``needs`` edges contain a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class EmptyMatrixAxis(PipelineLoadError):
    """A matrix axis (or the whole matrix after excludes) has no values."""

    def __init__(self, job: str, axis: str | None):
        self.job = job
        self.axis = axis
        if axis is None:
            msg = f"Job '{job}': matrix excludes remove every combination"
        else:
            msg = f"Job '{job}': matrix axis '{axis}' has no values"
        super().__init__(msg)


class UnknownEnvironment(PipewrightError):
    """An environment scope is not resolvable for the current run."""

    def __init__(self, scope: str, reason: str):
        self.scope = scope
        self.reason = reason
        super().__init__(f"Environment '{scope}' is not available: {reason}")
