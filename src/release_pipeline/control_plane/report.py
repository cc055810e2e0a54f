"""Immutable run records used for failure aggregation and the final summary."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from release_pipeline.domain.errors import StageExecutionError
from release_pipeline.domain.models import (
    BuildPlan,
    ExecutionResult,
    FailureReason,
    JSONValue,
    PlanState,
    StageState,
)


@dataclass(frozen=True, slots=True)
class StageRecord:
    name: str
    state: StageState
    attempts: tuple[ExecutionResult, ...] = ()
    reason: FailureReason | None = None
    detail: str = ""
    group: str | None = None

    @property
    def last_result(self) -> ExecutionResult | None:
        return self.attempts[-1] if self.attempts else None

    @property
    def log_ref(self) -> Path | None:
        last = self.last_result
        return last.log_ref if last is not None else None

    @property
    def error(self) -> StageExecutionError | None:
        """Typed failure of the last attempt, if it failed."""
        last = self.last_result
        return last.error() if last is not None and last.failed else None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "state": self.state.value,
            "reason": self.reason.value if self.reason is not None else None,
            "detail": self.detail,
            "group": self.group,
            "attempts": [
                {
                    "attempt": result.attempt,
                    "exit_code": result.exit_code,
                    "duration_ms": round(result.duration_ms, 3),
                    "failed": result.failed,
                    "reason": result.reason.value if result.reason is not None else None,
                    "error": str(result.error()) if result.failed else None,
                    "log_ref": result.log_ref.as_posix(),
                }
                for result in self.attempts
            ],
        }


@dataclass(frozen=True, slots=True)
class PlanOutcome:
    """Final state of one build plan and where to look when it failed."""

    plan: BuildPlan
    state: PlanState
    stages: tuple[StageRecord, ...]
    published: tuple[Path, ...] = ()
    failed_groups: tuple[str, ...] = ()
    hazard: str | None = None
    retained_scratch: bool = False

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id

    @property
    def succeeded(self) -> bool:
        return self.state is PlanState.SUCCEEDED

    def stage(self, name: str) -> StageRecord:
        for record in self.stages:
            if record.name == name:
                return record
        raise KeyError(f"Unknown stage: {name}")

    @property
    def failure(self) -> StageRecord | None:
        """First errored stage, else the first skipped one."""
        for state in (StageState.ERRORED, StageState.SKIPPED):
            for record in self.stages:
                if record.state is state:
                    return record
        return None

    def to_dict(self) -> dict[str, JSONValue]:
        failure = self.failure
        return {
            "plan": self.plan.to_dict(),
            "state": self.state.value,
            "published": [path.as_posix() for path in self.published],
            "failed_groups": list(self.failed_groups),
            "hazard": self.hazard,
            "retained_scratch": self.retained_scratch,
            "failure": None if failure is None or self.succeeded else failure.to_dict(),
            "stages": [record.to_dict() for record in self.stages],
        }


@dataclass(frozen=True, slots=True)
class PipelineReport:
    run_id: str
    outcomes: tuple[PlanOutcome, ...]
    aborted: bool = False
    abort_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.aborted and all(outcome.succeeded for outcome in self.outcomes)

    @property
    def failed_plans(self) -> tuple[str, ...]:
        return tuple(outcome.plan_id for outcome in self.outcomes if not outcome.succeeded)

    def outcome(self, plan_id: str) -> PlanOutcome:
        for outcome in self.outcomes:
            if outcome.plan_id == plan_id:
                return outcome
        raise KeyError(f"Unknown plan: {plan_id}")

    def summary_rows(self) -> list[tuple[str, str, str, str, str]]:
        """One ``(plan, state, stage, reason, log)`` row per plan, in plan order."""
        rows: list[tuple[str, str, str, str, str]] = []
        for outcome in self.outcomes:
            failure = None if outcome.succeeded else outcome.failure
            if failure is None:
                rows.append((outcome.plan_id, outcome.state.value, "-", "-", "-"))
                continue
            log_ref = failure.log_ref
            rows.append(
                (
                    outcome.plan_id,
                    outcome.state.value,
                    failure.name,
                    failure.reason.value if failure.reason is not None else "-",
                    log_ref.as_posix() if log_ref is not None else "-",
                )
            )
        return rows

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "succeeded": self.succeeded,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "failed_plans": list(self.failed_plans),
            "plans": [outcome.to_dict() for outcome in self.outcomes],
        }


__all__ = ["PipelineReport", "PlanOutcome", "StageRecord"]
