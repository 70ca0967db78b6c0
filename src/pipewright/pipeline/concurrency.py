"""Concurrency groups — at most one in-progress occupant per group.

The coordinator's group table is the only state shared across runs. Every
mutation goes through ``register`` / ``wait_turn`` / ``release`` under a
single ``asyncio.Lock``.

Occupants are opaque ids: a run id for pipeline-level groups, or
``"{run_id}/{instance_id}"`` for job-level groups.
"""

from __future__ import annotations

import asyncio
import logging
import re

from pipewright.pipeline.models import RunContext

logger = logging.getLogger("pipewright.pipeline.concurrency")

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def render_group_key(template: str, context: RunContext) -> str:
    """Fill ``{repository}``, ``{workflow}``, ``{ref}``, ``{event}`` from a context.

    Unknown placeholders are left as-is.
    """
    values = {
        "repository": context.repository,
        "workflow": context.workflow,
        "ref": context.ref,
        "event": context.event.value,
        "sha": context.sha,
    }

    def _sub(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    return _PLACEHOLDER_RE.sub(_sub, template)


class ConcurrencyCoordinator:
    """Process-wide registry of concurrency group occupants.

    Usage::

        coordinator = ConcurrencyCoordinator()
        superseded = await coordinator.register("org/repo-ci-refs/heads/main", run_id)
        for old in superseded:
            ...  # cancel old
        ...
        await coordinator.release(run_id)
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._occupants: dict[str, str] = {}  # group → occupant
        self._groups: dict[str, str] = {}  # occupant → group
        self._released = asyncio.Condition(self._lock)

    async def register(self, group_key: str, run_id: str) -> set[str]:
        """Install ``run_id`` as the group's occupant.

        Returns the previously active occupant(s) of the group, which the
        caller must cancel. Displaced occupants are forgotten, so a later
        registration never hands them back.
        """
        async with self._lock:
            superseded: set[str] = set()
            previous = self._occupants.get(group_key)
            if previous is not None and previous != run_id:
                superseded.add(previous)
                self._groups.pop(previous, None)
            self._occupants[group_key] = run_id
            self._groups[run_id] = group_key
            self._released.notify_all()

        if superseded:
            logger.info(
                "Concurrency group '%s': %s supersedes %s",
                group_key,
                run_id,
                ", ".join(sorted(superseded)),
            )
        return superseded

    async def wait_turn(self, group_key: str, run_id: str) -> None:
        """Wait until the group is free, then occupy it without cancelling."""
        async with self._lock:
            while self._occupants.get(group_key) not in (None, run_id):
                logger.info(
                    "Concurrency group '%s': %s queued behind %s",
                    group_key,
                    run_id,
                    self._occupants[group_key],
                )
                await self._released.wait()
            self._occupants[group_key] = run_id
            self._groups[run_id] = group_key

    async def release(self, run_id: str) -> None:
        """Remove ``run_id``'s occupancy. No-op if it was already displaced."""
        async with self._lock:
            group_key = self._groups.pop(run_id, None)
            if group_key is not None and self._occupants.get(group_key) == run_id:
                del self._occupants[group_key]
                logger.debug("Concurrency group '%s' released by %s", group_key, run_id)
            self._released.notify_all()

    def active(self, group_key: str) -> str | None:
        """Current occupant of a group."""
        return self._occupants.get(group_key)

    def group_of(self, run_id: str) -> str | None:
        """Group currently occupied by ``run_id``."""
        return self._groups.get(run_id)
