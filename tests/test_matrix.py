"""Tests for matrix expansion."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from pipewright.errors import EmptyMatrixAxis
from pipewright.pipeline.matrix import combinations, expand_job, instance_id
from pipewright.pipeline.models import JobSpec, MatrixStrategy


def _job(name: str = "test", **strategy) -> JobSpec:
    return JobSpec(name=name, strategy=MatrixStrategy(**strategy) if strategy else None)


class TestInstanceId:
    def test_plain_job(self):
        assert instance_id("build", ()) == "build"

    def test_axis_order_preserved(self):
        combo = (("os", "linux"), ("python", "3.12"))
        assert instance_id("test", combo) == "test[os=linux,python=3.12]"

    def test_boolean_values(self):
        assert instance_id("test", (("debug", True),)) == "test[debug=true]"


class TestExpand:
    def test_job_without_matrix_is_single_instance(self):
        instances = expand_job(_job("build"))
        assert [i.id for i in instances] == ["build"]
        assert instances[0].matrix == ()

    def test_two_by_two_gives_four_distinct_instances(self):
        spec = _job(axes={"os": ["linux", "windows"], "python": ["3.11", "3.12"]})
        instances = expand_job(spec)
        ids = [i.id for i in instances]
        assert len(instances) == 4
        assert len(set(ids)) == 4
        assert ids == [
            "test[os=linux,python=3.11]",
            "test[os=linux,python=3.12]",
            "test[os=windows,python=3.11]",
            "test[os=windows,python=3.12]",
        ]

    def test_instances_carry_their_values(self):
        spec = _job(axes={"os": ["linux"], "level": [1, 2]})
        instances = expand_job(spec)
        assert instances[1].matrix_values == {"os": "linux", "level": 2}
        assert all(i.spec is spec for i in instances)

    def test_expansion_is_deterministic(self):
        spec = _job(axes={"a": [1, 2, 3], "b": ["x", "y"]})
        assert [i.id for i in expand_job(spec)] == [i.id for i in expand_job(spec)]

    def test_empty_axis_raises(self):
        spec = _job(axes={"os": ["linux"], "python": []})
        with pytest.raises(EmptyMatrixAxis) as exc_info:
            expand_job(spec)
        assert exc_info.value.job == "test"
        assert exc_info.value.axis == "python"


class TestExclude:
    def test_exclude_removes_matching_combinations(self):
        spec = _job(
            axes={"os": ["linux", "windows"], "python": ["3.11", "3.12"]},
            exclude=[{"os": "windows", "python": "3.11"}],
        )
        ids = [i.id for i in expand_job(spec)]
        assert "test[os=windows,python=3.11]" not in ids
        assert len(ids) == 3

    def test_partial_exclude_removes_all_matches(self):
        spec = _job(
            axes={"os": ["linux", "windows"], "python": ["3.11", "3.12"]},
            exclude=[{"os": "windows"}],
        )
        assert [dict(c)["os"] for c in combinations(spec)] == ["linux", "linux"]

    def test_exclude_everything_raises(self):
        spec = _job(axes={"os": ["linux"]}, exclude=[{"os": "linux"}])
        with pytest.raises(EmptyMatrixAxis) as exc_info:
            expand_job(spec)
        assert exc_info.value.axis is None

    def test_exclude_unknown_axis_rejected(self):
        with pytest.raises(ValidationError, match="unknown axes"):
            MatrixStrategy(axes={"os": ["linux"]}, exclude=[{"arch": "arm64"}])

    def test_no_axes_rejected(self):
        with pytest.raises(ValidationError):
            MatrixStrategy(axes={})
