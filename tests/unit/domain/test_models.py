"""Unit tests for domain model validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from release_pipeline.domain.errors import (
    ArtifactHazardError,
    ArtifactMissingError,
    ConfigurationError,
    StageExecutionError,
    StageGraphError,
    StageTimeoutError,
    UnsupportedArchitectureError,
)
from release_pipeline.domain.models import (
    ArtifactRef,
    BuildPlan,
    ExecutionResult,
    FailureReason,
    Mount,
    RunnerAssignment,
    RunnerHint,
    Stage,
)


def _runner(**overrides: object) -> RunnerAssignment:
    values: dict[str, object] = {
        "hint": RunnerHint.STANDARD,
        "label": "ubuntu-22.04",
        "resource_class": "standard",
        "max_workers": 2,
    }
    values.update(overrides)
    return RunnerAssignment(**values)  # type: ignore[arg-type]


def test_artifact_key_distinguishes_architectures() -> None:
    plain = ArtifactRef(name="package", producer="package", path="dist/x86_64.deb")
    fanned = ArtifactRef(name="init", producer="init", path="init", architecture="aarch64")

    assert plain.key == "package"
    assert fanned.key == "init@aarch64"


@pytest.mark.parametrize("path", ["", "/abs/out", "../escape", "a/../../b"])
def test_artifact_paths_stay_inside_the_workdir(path: str) -> None:
    with pytest.raises(ValueError):
        ArtifactRef(name="out", producer="stage", path=path)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": "bad name", "command": "true"},
        {"name": "ok", "command": "  "},
        {"name": "ok", "command": "true", "timeout_seconds": 0},
        {"name": "ok", "command": "true", "workdir": "/abs"},
        {"name": "ok", "command": "true", "reown_paths": ("../up",)},
        {
            "name": "ok",
            "command": "true",
            "outputs": (ArtifactRef(name="x", producer="other", path="x"),),
        },
    ],
)
def test_invalid_stages_are_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        Stage(**kwargs)  # type: ignore[arg-type]


def test_stage_env_is_sorted_copy() -> None:
    env = {"B": "2", "A": "1"}
    stage = Stage(name="compile", command="true", env=env)
    env["C"] = "3"

    assert list(stage.env) == ["A", "B"]


def test_build_plan_validates_architecture_membership() -> None:
    plan = BuildPlan(
        platform="raspberrypi",
        architecture="aarch64",
        architectures=("aarch64",),
        feature_flags={"dev"},  # type: ignore[arg-type]
        runner=_runner(),
        produce_iso=False,
        produce_disk_image=True,
    )

    assert plan.plan_id == "raspberrypi"
    assert plan.feature_flags == frozenset({"dev"})
    assert plan.to_dict()["runner"] == {
        "hint": "standard",
        "label": "ubuntu-22.04",
        "resource_class": "standard",
        "max_workers": 2,
        "memory_scratch": False,
        "image_memory_scratch": False,
        "free_disk_space": False,
    }

    with pytest.raises(ValueError, match="architecture set"):
        BuildPlan(
            platform="x86_64",
            architecture="aarch64",
            architectures=("x86_64",),
            feature_flags=frozenset(),
            runner=_runner(),
        )
    with pytest.raises(ValueError):
        _runner(max_workers=0)


def test_execution_result_reason_must_match_failure(tmp_path: Path) -> None:
    log_ref = tmp_path / "compile.attempt-1.log"
    with pytest.raises(ValueError, match="requires a reason"):
        ExecutionResult("compile", 1, 1, 1.0, log_ref, failed=True)
    with pytest.raises(ValueError, match="must not carry"):
        ExecutionResult("compile", 1, 0, 1.0, log_ref, failed=False, reason=FailureReason.TIMEOUT)
    with pytest.raises(ValueError):
        ExecutionResult("compile", 0, 0, 1.0, log_ref, failed=False)


def test_execution_result_errors(tmp_path: Path) -> None:
    log_ref = tmp_path / "compile.attempt-1.log"
    timed_out = ExecutionResult(
        "compile", 1, None, 5.0, log_ref, failed=True, reason=FailureReason.TIMEOUT, detail="late"
    )
    exited = ExecutionResult(
        "compile", 2, 3, 5.0, log_ref, failed=True, reason=FailureReason.EXIT_CODE
    )
    ok = ExecutionResult("compile", 1, 0, 5.0, log_ref, failed=False)

    assert timed_out.timed_out
    assert isinstance(timed_out.error(), StageTimeoutError)
    assert str(timed_out.error()) == "stage 'compile' failed (timeout): late"
    assert type(exited.error()) is StageExecutionError
    with pytest.raises(ValueError, match="did not fail"):
        ok.error()


def test_mount_volume_syntax() -> None:
    assert Mount("/cache", "/usr/local/cargo/registry").as_volume() == (
        "/cache:/usr/local/cargo/registry"
    )
    assert Mount("/src", "/home/rust/src", read_only=True).as_volume() == "/src:/home/rust/src:ro"


def test_error_taxonomy() -> None:
    unsupported = UnsupportedArchitectureError("riscv64", ("x86_64", "aarch64"))

    assert isinstance(unsupported, ConfigurationError)
    assert unsupported.architecture == "riscv64"
    assert "x86_64, aarch64" in str(unsupported)
    assert issubclass(StageGraphError, ConfigurationError)
    assert issubclass(ArtifactMissingError, ArtifactHazardError)
    assert not issubclass(ArtifactHazardError, ConfigurationError)
