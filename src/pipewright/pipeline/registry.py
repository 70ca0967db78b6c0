"""Run registry — SQLite history of pipeline runs and job results.

Key exports:
    RunRegistry — save_run(), get_run(), list_runs(), get_job_results().
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

import aiosqlite

from pipewright.pipeline.models import (
    JobResult,
    JobState,
    PipelineRunResult,
    RunContext,
    RunStatus,
)

logger = logging.getLogger("pipewright.pipeline.registry")


class RunRegistry:
    """SQLite-backed persistence for finished (and not-triggered) runs.

    Takes an already-open aiosqlite connection with ``row_factory`` set to
    ``aiosqlite.Row``. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    @classmethod
    async def open(cls, path: str) -> RunRegistry:
        """Open (and initialize) a registry at ``path``."""
        db = await aiosqlite.connect(path)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        registry = cls(db)
        await registry.initialize()
        return registry

    async def close(self) -> None:
        await self._db.close()

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def save_run(self, result: PipelineRunResult) -> None:
        """Insert or update a run and replace its job results."""
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, status, context, concurrency_group,
                created_at, completed_at, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                status = excluded.status,
                concurrency_group = excluded.concurrency_group,
                completed_at = excluded.completed_at,
                error_message = excluded.error_message
            """,
            (
                result.run_id,
                result.pipeline_name,
                result.status.value,
                result.context.model_dump_json(),
                result.concurrency_group,
                _dt_to_str(result.created_at),
                _dt_to_str(result.completed_at),
                result.error_message,
            ),
        )
        await self._db.execute("DELETE FROM job_results WHERE run_id = ?", (result.run_id,))
        await self._db.executemany(
            """
            INSERT INTO job_results (
                run_id, instance_id, job_name, matrix, state, best_effort,
                outputs, error_message, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.run_id,
                    job.instance_id,
                    job.job_name,
                    json.dumps(job.matrix),
                    job.state.value,
                    1 if job.best_effort else 0,
                    json.dumps(job.outputs, default=str),
                    job.error_message,
                    _dt_to_str(job.started_at),
                    _dt_to_str(job.completed_at),
                )
                for job in result.jobs.values()
            ],
        )
        await self._db.commit()
        logger.debug("Saved run %s (%d job results)", result.run_id, len(result.jobs))

    async def get_run(self, run_id: str) -> PipelineRunResult | None:
        """Fetch a run, including its job results."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_run(row)
        run.jobs = {j.instance_id: j for j in await self.get_job_results(run_id)}
        return run

    async def list_runs(
        self,
        *,
        pipeline_name: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[PipelineRunResult]:
        """Most recent runs first, optionally filtered. Job results are not loaded."""
        clauses: list[str] = []
        params: list = []
        if pipeline_name:
            clauses.append("pipeline_name = ?")
            params.append(pipeline_name)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM pipeline_runs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_job_results(self, run_id: str) -> list[JobResult]:
        """Job results of a run, in insertion (arena) order."""
        cursor = await self._db.execute(
            "SELECT * FROM job_results WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job_result(r) for r in rows]

    async def delete_run(self, run_id: str) -> None:
        """Delete a run and its job results (cascading)."""
        await self._db.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        await self._db.commit()


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    status TEXT DEFAULT 'pending',
    context TEXT NOT NULL DEFAULT '{}',
    concurrency_group TEXT,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    completed_at TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_name
    ON pipeline_runs(pipeline_name, status);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_group
    ON pipeline_runs(concurrency_group);

CREATE TABLE IF NOT EXISTS job_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    instance_id TEXT NOT NULL,
    job_name TEXT NOT NULL,
    matrix TEXT DEFAULT '{}',

    state TEXT NOT NULL,
    best_effort INTEGER DEFAULT 0,
    outputs TEXT DEFAULT '{}',
    error_message TEXT,

    started_at TEXT,
    completed_at TEXT,

    UNIQUE (run_id, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_job_results_run
    ON job_results(run_id);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_run(row: aiosqlite.Row) -> PipelineRunResult:
    """Convert a database row to a PipelineRunResult (without job results)."""
    return PipelineRunResult(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        status=RunStatus(row["status"]),
        context=RunContext.model_validate_json(row["context"]),
        concurrency_group=row["concurrency_group"],
        created_at=_str_to_dt(row["created_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_job_result(row: aiosqlite.Row) -> JobResult:
    """Convert a database row to a JobResult."""
    return JobResult(
        instance_id=row["instance_id"],
        job_name=row["job_name"],
        matrix=json.loads(row["matrix"] or "{}"),
        state=JobState(row["state"]),
        best_effort=bool(row["best_effort"]),
        outputs=json.loads(row["outputs"] or "{}"),
        error_message=row["error_message"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )
