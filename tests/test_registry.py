"""Tests for the run registry — SQLite history of runs and job results."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest_asyncio

from pipewright.pipeline.models import (
    EventKind,
    JobResult,
    JobState,
    PipelineRunResult,
    RunContext,
    RunStatus,
)
from pipewright.pipeline.registry import RunRegistry


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    db_path = tmp_path / "test_runs.db"
    async with aiosqlite.connect(str(db_path)) as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON")
        yield conn


@pytest_asyncio.fixture
async def registry(db):
    reg = RunRegistry(db)
    await reg.initialize()
    return reg


# ── Factory Helpers ──────────────────────────────────────────────────────────

_T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_run(
    run_id: str = "run-001",
    pipeline_name: str = "ci",
    **overrides,
) -> PipelineRunResult:
    defaults: dict = dict(
        run_id=run_id,
        pipeline_name=pipeline_name,
        status=RunStatus.SUCCEEDED,
        context=RunContext(
            event=EventKind.PUSH,
            ref="refs/heads/main",
            repository="acme/widgets",
            changed_paths=frozenset({"src/app.py", "README.md"}),
        ),
        concurrency_group="acme/widgets-ci-refs/heads/main",
        created_at=_T0,
        completed_at=_T0 + timedelta(minutes=3),
    )
    defaults.update(overrides)
    return PipelineRunResult(**defaults)


def make_job(instance_id: str = "build", **overrides) -> JobResult:
    defaults: dict = dict(
        instance_id=instance_id,
        job_name=instance_id.split("[", 1)[0],
        state=JobState.SUCCEEDED,
        started_at=_T0,
        completed_at=_T0 + timedelta(seconds=30),
    )
    defaults.update(overrides)
    return JobResult(**defaults)


# ── Runs ─────────────────────────────────────────────────────────────────────


class TestRuns:
    async def test_missing_run(self, registry):
        assert await registry.get_run("nope") is None

    async def test_round_trip(self, registry):
        run = make_run(
            jobs={
                "build": make_job("build", outputs={"artifact": "app.tar"}),
                "test[os=linux]": make_job("test[os=linux]", matrix={"os": "linux"}),
                "lint": make_job(
                    "lint", state=JobState.FAILED, best_effort=True, error_message="exit status 1"
                ),
            }
        )
        await registry.save_run(run)

        stored = await registry.get_run("run-001")
        assert stored.status == RunStatus.SUCCEEDED
        assert stored.context == run.context
        assert stored.concurrency_group == run.concurrency_group
        assert stored.created_at == _T0
        assert list(stored.jobs) == ["build", "test[os=linux]", "lint"]
        assert stored.jobs["build"].outputs == {"artifact": "app.tar"}
        assert stored.jobs["test[os=linux]"].matrix == {"os": "linux"}
        assert stored.jobs["lint"].best_effort is True
        assert stored.jobs["lint"].error_message == "exit status 1"
        assert stored.jobs["build"].duration_seconds == 30

    async def test_save_replaces_job_results(self, registry):
        await registry.save_run(make_run(status=RunStatus.RUNNING, jobs={"build": make_job()}))
        await registry.save_run(
            make_run(
                status=RunStatus.FAILED,
                error_message="Failed jobs: test",
                jobs={
                    "build": make_job(),
                    "test": make_job("test", state=JobState.FAILED),
                },
            )
        )

        stored = await registry.get_run("run-001")
        assert stored.status == RunStatus.FAILED
        assert stored.error_message == "Failed jobs: test"
        assert len(await registry.get_job_results("run-001")) == 2

    async def test_not_triggered_run_without_jobs(self, registry):
        await registry.save_run(make_run(status=RunStatus.NOT_TRIGGERED, concurrency_group=None))
        stored = await registry.get_run("run-001")
        assert stored.status == RunStatus.NOT_TRIGGERED
        assert stored.jobs == {}

    async def test_delete_cascades(self, registry):
        await registry.save_run(make_run(jobs={"build": make_job()}))
        await registry.delete_run("run-001")
        assert await registry.get_run("run-001") is None
        assert await registry.get_job_results("run-001") == []


class TestListRuns:
    async def test_newest_first(self, registry):
        for n in range(3):
            await registry.save_run(
                make_run(f"run-{n}", created_at=_T0 + timedelta(minutes=n))
            )
        runs = await registry.list_runs()
        assert [r.run_id for r in runs] == ["run-2", "run-1", "run-0"]

    async def test_filters(self, registry):
        await registry.save_run(make_run("run-1", pipeline_name="ci"))
        await registry.save_run(make_run("run-2", pipeline_name="ci", status=RunStatus.FAILED))
        await registry.save_run(make_run("run-3", pipeline_name="release"))

        ci = await registry.list_runs(pipeline_name="ci")
        assert {r.run_id for r in ci} == {"run-1", "run-2"}

        failed = await registry.list_runs(pipeline_name="ci", status=RunStatus.FAILED)
        assert [r.run_id for r in failed] == ["run-2"]

    async def test_limit(self, registry):
        for n in range(5):
            await registry.save_run(make_run(f"run-{n}", created_at=_T0 + timedelta(minutes=n)))
        assert len(await registry.list_runs(limit=2)) == 2


class TestOpen:
    async def test_open_creates_schema(self, tmp_path):
        registry = await RunRegistry.open(str(tmp_path / "history.db"))
        try:
            await registry.save_run(make_run())
            assert (await registry.get_run("run-001")) is not None
        finally:
            await registry.close()
