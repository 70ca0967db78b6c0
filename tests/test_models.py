"""Tests for pipeline Pydantic models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from pipewright.pipeline.models import (
    EventKind,
    JobInstance,
    JobSpec,
    JobState,
    PipelineDefinition,
    RunContext,
    TriggerSpec,
)


# ── Enum value tests ─────────────────────────────────────────────────────────


class TestEnums:
    def test_event_values(self):
        assert EventKind.PULL_REQUEST == "pull-request"
        assert EventKind("release-published") == EventKind.RELEASE_PUBLISHED

    def test_terminal_states(self):
        terminal = {s for s in JobState if s.is_terminal}
        assert terminal == {
            JobState.SUCCEEDED,
            JobState.FAILED,
            JobState.CANCELLED,
            JobState.SKIPPED,
        }


# ── RunContext ───────────────────────────────────────────────────────────────


class TestRunContext:
    def test_frozen(self):
        ctx = RunContext(event=EventKind.PUSH, ref="refs/heads/main")
        with pytest.raises(ValidationError):
            ctx.ref = "refs/heads/dev"

    def test_branch(self):
        assert RunContext(event=EventKind.PUSH, ref="refs/heads/release/1.x").branch == "release/1.x"
        assert RunContext(event=EventKind.PUSH, ref="refs/tags/v1").branch is None

    def test_changed_paths_coerced_to_frozenset(self):
        ctx = RunContext(event=EventKind.PUSH, changed_paths=["a.py", "a.py", "b.py"])
        assert ctx.changed_paths == frozenset({"a.py", "b.py"})


# ── Definition models ────────────────────────────────────────────────────────


class TestJobSpec:
    def test_aliases(self):
        spec = JobSpec.model_validate({"name": "deploy", "if": "event == push", "with": {"a": 1}})
        assert spec.condition == "event == push"
        assert spec.with_ == {"a": 1}

    def test_populate_by_name(self):
        spec = JobSpec(name="deploy", condition="event == push")
        assert spec.condition == "event == push"

    def test_invalid_name(self):
        with pytest.raises(ValidationError, match="must match pattern"):
            JobSpec(name="bad name")

    def test_duplicate_needs(self):
        with pytest.raises(ValidationError, match="duplicate needs"):
            JobSpec(name="deploy", needs=["build", "build"])

    def test_title(self):
        assert JobSpec(name="build").title == "build"
        assert JobSpec(name="build", display_name="Build app").title == "Build app"


class TestPipelineDefinition:
    def test_names_filled_from_keys(self):
        definition = PipelineDefinition(jobs={"build": {}, "test": {"needs": ["build"]}})
        assert definition.jobs["build"].name == "build"
        assert definition.get_job("test").needs == ["build"]
        assert definition.get_job("nope") is None

    def test_requires_a_job(self):
        with pytest.raises(ValidationError):
            PipelineDefinition(jobs={})

    def test_mismatched_name(self):
        with pytest.raises(ValidationError, match="different name"):
            PipelineDefinition(jobs={"build": {"name": "compile"}})

    def test_invalid_key(self):
        with pytest.raises(ValidationError, match="must match pattern"):
            PipelineDefinition(jobs={"9lives": {}})


class TestTriggerSpec:
    def test_requires_events(self):
        with pytest.raises(ValidationError):
            TriggerSpec(events=[])

    def test_branch_globs(self):
        trigger = TriggerSpec(events=[EventKind.PUSH], branches=["release/*"])
        assert trigger.matches(RunContext(event=EventKind.PUSH, ref="refs/heads/release/2.0"))
        assert not trigger.matches(RunContext(event=EventKind.PUSH, ref="refs/heads/main"))

    def test_branch_filter_excludes_tags(self):
        trigger = TriggerSpec(events=[EventKind.PUSH], branches=["*"])
        assert not trigger.matches(RunContext(event=EventKind.PUSH, ref="refs/tags/v1"))

    def test_empty_changes_policy(self):
        trigger = TriggerSpec(events=[EventKind.PUSH], paths_ignore=["docs/*"])
        ctx = RunContext(event=EventKind.PUSH)
        assert trigger.matches(ctx)
        assert not trigger.matches(ctx, empty_changes_match=False)


# ── Runtime state ────────────────────────────────────────────────────────────


class TestJobInstance:
    def test_terminal_state_is_final(self):
        inst = JobInstance(spec=JobSpec(name="build"), id="build")
        inst.transition(JobState.RUNNING)
        inst.transition(JobState.SUCCEEDED)
        assert inst.is_terminal
        with pytest.raises(RuntimeError, match="already succeeded"):
            inst.transition(JobState.FAILED)
