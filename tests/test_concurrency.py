"""Tests for concurrency groups."""

from __future__ import annotations

import asyncio

from pipewright.pipeline.concurrency import ConcurrencyCoordinator, render_group_key
from pipewright.pipeline.models import EventKind, RunContext


class TestRenderGroupKey:
    def test_placeholders(self):
        ctx = RunContext(
            event=EventKind.PUSH,
            ref="refs/heads/main",
            repository="acme/widgets",
            workflow="ci",
        )
        key = render_group_key("{repository}-{workflow}-{ref}-{event}", ctx)
        assert key == "acme/widgets-ci-refs/heads/main-push"

    def test_unknown_placeholder_left_alone(self):
        ctx = RunContext(event=EventKind.PUSH, ref="refs/heads/main")
        assert render_group_key("deploy-{region}-{ref}", ctx) == "deploy-{region}-refs/heads/main"


class TestRegister:
    async def test_first_registration_supersedes_nothing(self):
        coordinator = ConcurrencyCoordinator()
        assert await coordinator.register("g", "run-1") == set()
        assert coordinator.active("g") == "run-1"
        assert coordinator.group_of("run-1") == "g"

    async def test_second_registration_supersedes_first(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("g", "run-1")
        assert await coordinator.register("g", "run-2") == {"run-1"}
        assert coordinator.active("g") == "run-2"
        assert coordinator.group_of("run-1") is None

    async def test_displaced_run_is_not_returned_again(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("g", "run-1")
        await coordinator.register("g", "run-2")
        assert await coordinator.register("g", "run-3") == {"run-2"}

    async def test_groups_are_independent(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("main", "run-1")
        assert await coordinator.register("dev", "run-2") == set()
        assert coordinator.active("main") == "run-1"

    async def test_reregistering_same_run_is_idempotent(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("g", "run-1")
        assert await coordinator.register("g", "run-1") == set()


class TestRelease:
    async def test_release_frees_group(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("g", "run-1")
        await coordinator.release("run-1")
        assert coordinator.active("g") is None
        assert await coordinator.register("g", "run-2") == set()

    async def test_release_of_displaced_run_keeps_new_occupant(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("g", "run-1")
        await coordinator.register("g", "run-2")
        await coordinator.release("run-1")
        assert coordinator.active("g") == "run-2"

    async def test_release_unknown_is_noop(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.release("nobody")


class TestWaitTurn:
    async def test_free_group_is_entered_immediately(self):
        coordinator = ConcurrencyCoordinator()
        await asyncio.wait_for(coordinator.wait_turn("g", "run-1"), timeout=1)
        assert coordinator.active("g") == "run-1"

    async def test_queues_until_release(self):
        coordinator = ConcurrencyCoordinator()
        await coordinator.register("g", "run-1")

        waiter = asyncio.create_task(coordinator.wait_turn("g", "run-2"))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert coordinator.active("g") == "run-1"

        await coordinator.release("run-1")
        await asyncio.wait_for(waiter, timeout=1)
        assert coordinator.active("g") == "run-2"
