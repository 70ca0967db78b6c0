"""Matrix expansion — one JobInstance per axis-value combination."""

from __future__ import annotations

import itertools
import logging

from pipewright.errors import EmptyMatrixAxis
from pipewright.pipeline.models import JobInstance, JobSpec, Scalar

logger = logging.getLogger("pipewright.pipeline.matrix")

Combination = tuple[tuple[str, Scalar], ...]


def instance_id(job_name: str, combination: Combination) -> str:
    """Stable identifier: ``name`` or ``name[axis=value,...]`` in axis order."""
    if not combination:
        return job_name
    values = ",".join(f"{axis}={_format(value)}" for axis, value in combination)
    return f"{job_name}[{values}]"


def _format(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def combinations(spec: JobSpec) -> list[Combination]:
    """Cartesian product of the job's axes, minus excluded combinations."""
    if spec.strategy is None:
        return [()]

    axes = spec.strategy.axes
    for axis, values in axes.items():
        if not values:
            raise EmptyMatrixAxis(spec.name, axis)

    names = list(axes)
    product = [
        tuple(zip(names, values)) for values in itertools.product(*axes.values())
    ]

    excludes = spec.strategy.exclude
    if excludes:
        product = [c for c in product if not any(_excluded(c, e) for e in excludes)]
        if not product:
            raise EmptyMatrixAxis(spec.name, None)

    return product


def _excluded(combination: Combination, exclude: dict[str, Scalar]) -> bool:
    values = dict(combination)
    return all(_format(values[axis]) == _format(v) for axis, v in exclude.items())


def expand_job(spec: JobSpec) -> list[JobInstance]:
    """Expand a job into its concrete instances, in deterministic order."""
    instances = [
        JobInstance(spec=spec, matrix=combo, id=instance_id(spec.name, combo))
        for combo in combinations(spec)
    ]
    if spec.strategy is not None:
        logger.debug("Expanded job '%s' into %d instances", spec.name, len(instances))
    return instances
