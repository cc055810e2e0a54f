"""Unit tests for run report aggregation."""

from __future__ import annotations

from pathlib import Path

from release_pipeline.control_plane import PipelineReport, PlanOutcome, StageRecord
from release_pipeline.domain.errors import StageExecutionError, StageTimeoutError
from release_pipeline.domain.models import (
    ExecutionResult,
    FailureReason,
    PlanState,
    StageState,
)
from release_pipeline.matrix import DEFAULT_MATRIX, expand


def _outcomes(tmp_path: Path) -> tuple[PlanOutcome, PlanOutcome]:
    ok_plan, bad_plan = expand(DEFAULT_MATRIX)[:2]
    failed_attempt = ExecutionResult(
        stage="compile",
        attempt=1,
        exit_code=2,
        duration_ms=12.3456,
        log_ref=tmp_path / "compile.attempt-1.log",
        failed=True,
        reason=FailureReason.EXIT_CODE,
        detail="exited with status 2",
    )
    ok = PlanOutcome(
        plan=ok_plan,
        state=PlanState.SUCCEEDED,
        stages=(StageRecord(name="compile", state=StageState.DONE),),
        published=(tmp_path / "dist" / "x86_64.iso",),
    )
    bad = PlanOutcome(
        plan=bad_plan,
        state=PlanState.FAILED,
        stages=(
            StageRecord(
                name="package",
                state=StageState.SKIPPED,
                reason=FailureReason.UPSTREAM_FAILED,
            ),
            StageRecord(
                name="compile",
                state=StageState.ERRORED,
                attempts=(failed_attempt,),
                reason=FailureReason.EXIT_CODE,
                group="container-init",
            ),
        ),
        failed_groups=("container-init",),
    )
    return ok, bad


def test_failure_prefers_errored_stage_over_skipped(tmp_path: Path) -> None:
    _ok, bad = _outcomes(tmp_path)

    assert bad.failure is not None
    assert bad.failure.name == "compile"
    assert bad.failure.log_ref == tmp_path / "compile.attempt-1.log"


def test_stage_record_exposes_typed_error_of_last_attempt(tmp_path: Path) -> None:
    ok, bad = _outcomes(tmp_path)

    error = bad.stage("compile").error
    assert isinstance(error, StageExecutionError)
    assert not isinstance(error, StageTimeoutError)
    assert str(error) == "stage 'compile' failed (exit_code): exited with status 2"
    assert error.result.log_ref == tmp_path / "compile.attempt-1.log"
    assert ok.stage("compile").error is None
    assert bad.stage("package").error is None


def test_summary_rows_list_every_plan_in_order(tmp_path: Path) -> None:
    report = PipelineReport(run_id="run-1", outcomes=_outcomes(tmp_path))

    assert report.summary_rows() == [
        ("x86_64", "succeeded", "-", "-", "-"),
        (
            "x86_64-nonfree",
            "failed",
            "compile",
            "exit_code",
            (tmp_path / "compile.attempt-1.log").as_posix(),
        ),
    ]
    assert report.failed_plans == ("x86_64-nonfree",)
    assert not report.succeeded


def test_aborted_run_never_succeeds(tmp_path: Path) -> None:
    ok, _bad = _outcomes(tmp_path)

    report = PipelineReport(run_id="run-1", outcomes=(ok,), aborted=True, abort_reason="hazard")

    assert report.failed_plans == ()
    assert not report.succeeded


def test_to_dict_is_json_ready(tmp_path: Path) -> None:
    report = PipelineReport(run_id="run-1", outcomes=_outcomes(tmp_path))

    payload = report.to_dict()

    assert payload["run_id"] == "run-1"
    assert payload["failed_plans"] == ["x86_64-nonfree"]
    plans = payload["plans"]
    assert isinstance(plans, list)
    assert plans[0]["failure"] is None
    assert plans[0]["published"] == [(tmp_path / "dist" / "x86_64.iso").as_posix()]
    failure = plans[1]["failure"]
    assert failure["name"] == "compile"
    assert failure["attempts"][0]["duration_ms"] == 12.346
    assert failure["attempts"][0]["reason"] == "exit_code"
    assert failure["attempts"][0]["error"] == (
        "stage 'compile' failed (exit_code): exited with status 2"
    )
