"""Pipeline graph — validated DAG of expanded job instances.

Instances live in an arena (a list) and are addressed by integer index;
``dependencies[i]`` and ``dependents[i]`` are adjacency lists over those
indices. All validation happens once, in :meth:`PipelineGraph.build`:

- every condition parses (``ConditionSyntaxError``)
- every ``needs`` name exists (``UnknownDependency``)
- the ``needs`` relation is acyclic (``CyclicDependency``)
- every matrix axis has values (``EmptyMatrixAxis``)

A ``needs`` reference to a matrixed job depends on all of its instances.
"""

from __future__ import annotations

import logging
from collections import deque

from pipewright.errors import ConditionSyntaxError, CyclicDependency, UnknownDependency
from pipewright.pipeline.conditions import Condition, parse_condition
from pipewright.pipeline.matrix import expand_job
from pipewright.pipeline.models import JobInstance, PipelineDefinition

logger = logging.getLogger("pipewright.pipeline.graph")


class PipelineGraph:
    """Directed acyclic graph of job instances.

    Build with :meth:`build`; the constructor assumes already-validated input.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        instances: list[JobInstance],
        dependencies: list[list[int]],
        conditions: dict[str, Condition],
    ):
        self.definition = definition
        self.instances = instances
        self.dependencies = dependencies
        self.dependents: list[list[int]] = [[] for _ in instances]
        for node, deps in enumerate(dependencies):
            for dep in deps:
                self.dependents[dep].append(node)

        self._conditions = conditions
        self._index = {inst.id: i for i, inst in enumerate(instances)}
        self._by_job: dict[str, list[int]] = {}
        for i, inst in enumerate(instances):
            self._by_job.setdefault(inst.name, []).append(i)

    # ── Construction ─────────────────────────────────────────────────────────

    @classmethod
    def build(cls, definition: PipelineDefinition) -> PipelineGraph:
        """Validate a pipeline definition and expand it into a graph."""
        jobs = definition.jobs
        known = list(jobs)

        conditions: dict[str, Condition] = {}
        for name, spec in jobs.items():
            if spec.condition is None:
                continue
            try:
                conditions[name] = parse_condition(spec.condition)
            except ConditionSyntaxError as exc:
                raise exc.for_job(name) from None

        for name, spec in jobs.items():
            for dep in spec.needs:
                if dep not in jobs:
                    raise UnknownDependency(name, dep, known)

        cycle = find_cycle({name: spec.needs for name, spec in jobs.items()})
        if cycle:
            raise CyclicDependency(cycle)

        instances: list[JobInstance] = []
        job_nodes: dict[str, list[int]] = {}
        for name, spec in jobs.items():
            expanded = expand_job(spec)
            job_nodes[name] = list(range(len(instances), len(instances) + len(expanded)))
            instances.extend(expanded)

        dependencies: list[list[int]] = []
        for inst in instances:
            deps: list[int] = []
            for dep in inst.spec.needs:
                deps.extend(job_nodes[dep])
            dependencies.append(deps)

        graph = cls(definition, instances, dependencies, conditions)
        logger.info(
            "Built pipeline '%s': %d jobs, %d instances",
            definition.name,
            len(jobs),
            len(instances),
        )
        return graph

    # ── Queries ──────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.instances)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._index

    def index_of(self, instance_id: str) -> int:
        return self._index[instance_id]

    def get(self, instance_id: str) -> JobInstance:
        return self.instances[self._index[instance_id]]

    def condition_for(self, job_name: str) -> Condition | None:
        """The parsed condition of a job, if it has one."""
        return self._conditions.get(job_name)

    def instances_of(self, job_name: str) -> list[JobInstance]:
        return [self.instances[i] for i in self._by_job.get(job_name, [])]

    def dependencies_of(self, instance_id: str) -> list[JobInstance]:
        return [self.instances[i] for i in self.dependencies[self._index[instance_id]]]

    def dependents_of(self, instance_id: str) -> list[JobInstance]:
        return [self.instances[i] for i in self.dependents[self._index[instance_id]]]

    def entry_instances(self) -> list[JobInstance]:
        """Instances with no dependencies."""
        return [self.instances[i] for i, deps in enumerate(self.dependencies) if not deps]

    def transitive_dependents(self, instance_id: str) -> list[JobInstance]:
        """All instances reachable forward from ``instance_id`` (BFS order)."""
        start = self._index[instance_id]
        seen = {start}
        order: list[int] = []
        queue = deque(self.dependents[start])
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            order.append(node)
            queue.extend(self.dependents[node])
        return [self.instances[i] for i in order]

    def topological_order(self) -> list[JobInstance]:
        """Kahn's algorithm; ties broken by arena index."""
        indeg = [len(deps) for deps in self.dependencies]
        queue = deque(i for i, d in enumerate(indeg) if d == 0)
        order: list[int] = []
        while queue:
            node = queue.popleft()
            order.append(node)
            for child in self.dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    queue.append(child)
        return [self.instances[i] for i in order]


def find_cycle(needs: dict[str, list[str]]) -> list[str] | None:
    """Return one dependency cycle as a closed path (``[a, b, a]``), or None.

    Iterative DFS with white/grey/black colouring. Names not in ``needs`` are
    treated as leaves.
    """
    white, grey, black = 0, 1, 2
    colour = {name: white for name in needs}

    for root in needs:
        if colour[root] != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        path: list[str] = [root]
        colour[root] = grey
        while stack:
            node, child_idx = stack[-1]
            children = needs.get(node, [])
            if child_idx >= len(children):
                stack.pop()
                path.pop()
                colour[node] = black
                continue
            stack[-1] = (node, child_idx + 1)
            child = children[child_idx]
            state = colour.get(child, black)
            if state == grey:
                start = path.index(child)
                return path[start:] + [child]
            if state == white:
                colour[child] = grey
                stack.append((child, 0))
                path.append(child)
    return None
