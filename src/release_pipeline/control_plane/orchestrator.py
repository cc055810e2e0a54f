"""
release-pipeline — pipeline orchestrator.

File: src/release_pipeline/control_plane/orchestrator.py

Purpose
- Drive every build plan's stage DAG to completion with bounded concurrency.

Functional requirements
- Configuration problems (graph shape, toolchains, templates) abort before any stage runs.
- A stage is ready only when every input exists in its plan's artifact store.
- An errored stage skips its transitive dependents; sibling plans keep running.
- An artifact hazard cancels the run: no new stage starts anywhere, in-flight stages
  are awaited and unstarted stages are skipped.
- Succeeded plans publish their artifacts; every plan's scratch space is cleaned up.

Non-functional requirements
- Blocking work (subprocess waits, copies, ownership changes) runs in worker threads.
- Scheduling decisions are emitted through ``structlog``.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from release_pipeline.artifacts.identity import Identity
from release_pipeline.artifacts.registry_cache import RegistryCache
from release_pipeline.artifacts.store import ArtifactStore, ChownFn
from release_pipeline.control_plane.report import PipelineReport, PlanOutcome, StageRecord
from release_pipeline.domain.errors import (
    ArtifactHazardError,
    ConfigurationError,
)
from release_pipeline.domain.models import (
    BuildPlan,
    ExecutionResult,
    FailureReason,
    PlanState,
    Stage,
    StageState,
    ToolchainSpec,
)
from release_pipeline.observability.logging import correlation_scope
from release_pipeline.planning.release_stages import ReleaseStageSettings, build_release_stages
from release_pipeline.planning.stage_graph import StageGraph
from release_pipeline.sandbox.command_template import validate_template
from release_pipeline.sandbox.stage_executor import SandboxBackend, StageExecutor, stage_directory
from release_pipeline.toolchain.selector import ToolchainSelector
from release_pipeline.utils.concurrency import BoundedSemaphore, CancellationToken
from release_pipeline.utils.fs import safe_delete

_PENDING_STATES = frozenset({StageState.BLOCKED, StageState.READY})


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Filesystem layout and limits for one pipeline invocation."""

    workspace_root: Path
    artifact_root: Path
    publish_dir: Path
    log_dir: Path
    memory_scratch_root: Path | None = None
    source_dir: Path | None = None
    max_parallel_plans: int = 2
    poll_interval_seconds: float = 0.5
    retain_diagnostics: bool = False
    owner: str | None = None
    release_variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_parallel_plans <= 0:
            raise ValueError("OrchestratorSettings.max_parallel_plans must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("OrchestratorSettings.poll_interval_seconds must be > 0")
        for name in ("workspace_root", "artifact_root", "publish_dir", "log_dir"):
            object.__setattr__(self, name, Path(getattr(self, name)))
        for name in ("memory_scratch_root", "source_dir"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, Path(value))
        object.__setattr__(self, "release_variables", dict(self.release_variables))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> OrchestratorSettings:
        paths = config["paths"]
        source_dir = paths.get("source_dir")
        scratch_root = paths.get("memory_scratch_root")
        release = config["release"]
        return cls(
            workspace_root=Path(paths["workspace_root"]),
            artifact_root=Path(paths["artifact_root"]),
            publish_dir=Path(paths["publish_dir"]),
            log_dir=Path(paths["log_dir"]),
            memory_scratch_root=Path(scratch_root) if scratch_root else None,
            source_dir=Path(source_dir) if source_dir else None,
            max_parallel_plans=config["resources"]["max_parallel_plans"],
            poll_interval_seconds=config["executor"]["poll_interval_seconds"],
            retain_diagnostics=config["artifacts"]["retain_diagnostics"],
            owner=config["artifacts"]["owner"] or None,
            release_variables={"version": release["version"], "tag": release["tag"]},
        )


@dataclass(slots=True)
class _StageProgress:
    stage: Stage
    state: StageState = StageState.BLOCKED
    attempts: tuple[ExecutionResult, ...] = ()
    reason: FailureReason | None = None
    detail: str = ""

    def record(self) -> StageRecord:
        return StageRecord(
            name=self.stage.name,
            state=self.state,
            attempts=self.attempts,
            reason=self.reason,
            detail=self.detail,
            group=self.stage.group,
        )


@dataclass(frozen=True, slots=True)
class _StageRun:
    attempts: tuple[ExecutionResult, ...]
    state: StageState
    reason: FailureReason | None = None
    detail: str = ""
    hazard: bool = False


@dataclass(frozen=True, slots=True)
class _PlanContext:
    plan: BuildPlan
    workspace: Path
    scratch_base: Path
    image_scratch: Path | None
    log_dir: Path
    store: ArtifactStore
    cancel: CancellationToken


class PipelineOrchestrator:
    """Run build plans concurrently, one stage DAG per plan."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        *,
        executor: StageExecutor,
        selector: ToolchainSelector,
        stage_settings: ReleaseStageSettings | None = None,
        registry_cache: RegistryCache | None = None,
        identity: Identity | None = None,
        chown: ChownFn = os.chown,
        logger: Any | None = None,
        run_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._executor = executor
        self._selector = selector
        self._stage_settings = stage_settings
        self._registry_cache = registry_cache
        self._identity = identity if identity is not None else Identity.resolve(settings.owner)
        self._chown = chown
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._run_id = run_id if run_id is not None else _new_run_id()

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    def compile(self, plans: Sequence[BuildPlan]) -> dict[str, tuple[Stage, ...]]:
        """Compile the release stage DAG of every plan; fails on the first bad plan."""

        _assert_unique_plan_ids(plans)
        return {
            plan.plan_id: build_release_stages(plan, self._selector, self._stage_settings)
            for plan in plans
        }

    async def run(
        self,
        plans: Sequence[BuildPlan],
        stages_by_plan: Mapping[str, Sequence[Stage]] | None = None,
    ) -> PipelineReport:
        """Execute ``plans`` and return the aggregated report.

        Without ``stages_by_plan`` each plan runs the standard release stages.
        """

        ordered = tuple(plans)
        graphs = self._preflight(ordered, stages_by_plan)
        token = CancellationToken()
        plan_limit = BoundedSemaphore(self._settings.max_parallel_plans)

        async def _guarded(plan: BuildPlan) -> PlanOutcome:
            async with plan_limit.permit():
                return await self.run_plan(plan, graphs[plan.plan_id], token=token)

        outcomes = await asyncio.gather(*(_guarded(plan) for plan in ordered))
        await asyncio.to_thread(self._remove_empty_run_dirs)
        report = PipelineReport(
            run_id=self._run_id,
            outcomes=tuple(outcomes),
            aborted=token.is_cancelled,
            abort_reason=token.reason,
        )
        self._logger.info(
            "pipeline_run_finished",
            run_id=self._run_id,
            succeeded=report.succeeded,
            aborted=report.aborted,
            failed_plans=list(report.failed_plans),
            peak_parallel_plans=plan_limit.peak,
        )
        return report

    async def run_plan(
        self,
        plan: BuildPlan,
        stages: Sequence[Stage] | StageGraph,
        *,
        token: CancellationToken | None = None,
    ) -> PlanOutcome:
        graph = stages if isinstance(stages, StageGraph) else StageGraph.from_stages(stages)
        cancel = token if token is not None else CancellationToken()
        with correlation_scope(run_id=self._run_id, plan_id=plan.plan_id):
            return await self._execute_plan(plan, graph, cancel)

    def _preflight(
        self,
        plans: Sequence[BuildPlan],
        stages_by_plan: Mapping[str, Sequence[Stage]] | None,
    ) -> dict[str, StageGraph]:
        if stages_by_plan is None:
            stages_by_plan = self.compile(plans)
        else:
            _assert_unique_plan_ids(plans)

        graphs: dict[str, StageGraph] = {}
        for plan in plans:
            stages = stages_by_plan.get(plan.plan_id)
            if stages is None:
                raise ConfigurationError(f"no stages given for plan {plan.plan_id!r}")
            graph = StageGraph.from_stages(stages)
            for stage in graph.stages:
                validate_template(stage.name, stage.command)
                if stage.toolchain is not None:
                    self._selector.resolve(
                        stage.toolchain.architecture,
                        plan.feature_flags,
                        kind=stage.toolchain.kind,
                    )
            graphs[plan.plan_id] = graph
        return graphs

    async def _execute_plan(
        self, plan: BuildPlan, graph: StageGraph, cancel: CancellationToken
    ) -> PlanOutcome:
        plan_id = plan.plan_id
        progress = {stage.name: _StageProgress(stage) for stage in graph.stages}

        if cancel.is_cancelled:
            for item in progress.values():
                self._transition(
                    plan_id, item, StageState.SKIPPED, FailureReason.CANCELLED, cancel.reason or ""
                )
            return self._finish_plan(plan, graph, progress, PlanState.FAILED)

        self._logger.info(
            "pipeline_plan_started",
            run_id=self._run_id,
            plan_id=plan_id,
            runner=plan.runner.label,
            max_workers=plan.runner.max_workers,
        )
        try:
            context = await asyncio.to_thread(self._prepare_plan, plan, graph, cancel)
        except OSError as exc:
            for item in progress.values():
                self._transition(
                    plan_id,
                    item,
                    StageState.SKIPPED,
                    FailureReason.LAUNCH_ERROR,
                    f"workspace setup failed: {exc}",
                )
            return self._finish_plan(plan, graph, progress, PlanState.FAILED)

        failed_groups: set[str] = set()
        hazard: str | None = None
        stage_limit = BoundedSemaphore(plan.runner.max_workers)
        running: dict[asyncio.Task[_StageRun], str] = {}

        while True:
            for item in progress.values():
                if item.state is StageState.BLOCKED and all(
                    context.store.exists(ref) for ref in item.stage.inputs
                ):
                    self._transition(plan_id, item, StageState.READY)

            if not cancel.is_cancelled:
                for name in graph.order:
                    if stage_limit.available <= 0:
                        break
                    item = progress[name]
                    if item.state is not StageState.READY:
                        continue
                    await stage_limit.acquire()
                    self._transition(plan_id, item, StageState.RUNNING)
                    task = asyncio.create_task(self._run_stage(context, item.stage))
                    running[task] = name

            if not running:
                break

            done, _pending = await asyncio.wait(
                running,
                timeout=self._settings.poll_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                name = running.pop(task)
                stage_limit.release()
                stage_run = task.result()
                item = progress[name]
                item.attempts = stage_run.attempts
                if stage_run.state is StageState.DONE:
                    self._transition(plan_id, item, StageState.DONE)
                    continue

                self._transition(
                    plan_id, item, StageState.ERRORED, stage_run.reason, stage_run.detail
                )
                if item.stage.group is not None:
                    failed_groups.add(item.stage.group)
                if stage_run.hazard:
                    hazard = stage_run.detail
                    cancel.cancel(f"artifact hazard in plan {plan_id}: {stage_run.detail}")
                for dependent in graph.get_dependents(name, transitive=True):
                    downstream = progress[dependent]
                    if downstream.state in _PENDING_STATES:
                        self._transition(
                            plan_id,
                            downstream,
                            StageState.SKIPPED,
                            FailureReason.UPSTREAM_FAILED,
                            f"upstream stage {name} failed",
                        )

        for item in progress.values():
            if item.state in _PENDING_STATES:
                self._transition(
                    plan_id, item, StageState.SKIPPED, FailureReason.CANCELLED, cancel.reason or ""
                )

        succeeded = all(item.state is StageState.DONE for item in progress.values())
        published: tuple[Path, ...] = ()
        if succeeded:
            try:
                published = await asyncio.to_thread(
                    context.store.publish, self._settings.publish_dir
                )
            except (ArtifactHazardError, OSError) as exc:
                succeeded = False
                hazard = f"publishing failed: {exc}"
                cancel.cancel(f"artifact hazard in plan {plan_id}: {hazard}")

        retained = not await asyncio.to_thread(self._cleanup_plan, context, failed=not succeeded)
        return self._finish_plan(
            plan,
            graph,
            progress,
            PlanState.SUCCEEDED if succeeded else PlanState.FAILED,
            published=published,
            failed_groups=tuple(sorted(failed_groups)),
            hazard=hazard,
            retained_scratch=retained,
            workers=stage_limit.snapshot(),
        )

    def _prepare_plan(
        self, plan: BuildPlan, graph: StageGraph, cancel: CancellationToken
    ) -> _PlanContext:
        settings = self._settings
        scratch_base = settings.workspace_root
        if plan.runner.memory_scratch and settings.memory_scratch_root is not None:
            scratch_base = settings.memory_scratch_root
        scratch_base = (scratch_base / self._run_id).resolve()
        workspace = scratch_base / plan.plan_id

        if settings.source_dir is not None:
            shutil.copytree(settings.source_dir, workspace, symlinks=True, dirs_exist_ok=True)
        else:
            workspace.mkdir(parents=True, exist_ok=True)
        for stage in graph.stages:
            stage_directory(stage, workspace).mkdir(parents=True, exist_ok=True)

        image_scratch: Path | None = None
        if plan.runner.image_memory_scratch and settings.memory_scratch_root is not None:
            image_scratch = (
                settings.memory_scratch_root / self._run_id / f"{plan.plan_id}-image"
            ).resolve()
            image_scratch.mkdir(parents=True, exist_ok=True)

        log_dir = settings.log_dir / self._run_id / plan.plan_id
        log_dir.mkdir(parents=True, exist_ok=True)
        store = ArtifactStore(
            settings.artifact_root / self._run_id,
            plan.plan_id,
            identity=self._identity,
            chown=self._chown,
        )
        return _PlanContext(
            plan=plan,
            workspace=workspace,
            scratch_base=scratch_base,
            image_scratch=image_scratch,
            log_dir=log_dir,
            store=store,
            cancel=cancel,
        )

    async def _run_stage(self, context: _PlanContext, stage: Stage) -> _StageRun:
        attempts: list[ExecutionResult] = []
        max_attempts = 2 if stage.retryable else 1
        toolchain: ToolchainSpec | None = None
        try:
            for attempt in range(1, max_attempts + 1):
                # Each attempt resolves its toolchain afresh.
                toolchain = self._resolve_toolchain(context.plan, stage)
                variables = self._stage_variables(context, stage, toolchain)
                result = await asyncio.to_thread(
                    self._execute, context, stage, toolchain, variables, attempt
                )
                attempts.append(result)
                if not result.failed:
                    break
                error = result.error()
                self._logger.warning(
                    "pipeline_stage_attempt_failed",
                    run_id=self._run_id,
                    plan_id=context.plan.plan_id,
                    stage=stage.name,
                    attempt=attempt,
                    reason=error.reason.value,
                    error=str(error),
                    error_type=type(error).__name__,
                    log_ref=result.log_ref.as_posix(),
                    will_retry=attempt < max_attempts and not context.cancel.is_cancelled,
                )
                if context.cancel.is_cancelled:
                    break
        except ConfigurationError as exc:
            return _StageRun(
                tuple(attempts), StageState.ERRORED, FailureReason.LAUNCH_ERROR, str(exc)
            )
        except ArtifactHazardError as exc:
            return _StageRun(
                tuple(attempts),
                StageState.ERRORED,
                FailureReason.ARTIFACT_HAZARD,
                str(exc),
                hazard=True,
            )

        last = attempts[-1]
        if last.failed:
            return _StageRun(tuple(attempts), StageState.ERRORED, last.reason, last.detail)

        try:
            await asyncio.to_thread(self._collect_outputs, context, stage, toolchain)
        except ArtifactHazardError as exc:
            return _StageRun(
                tuple(attempts),
                StageState.ERRORED,
                FailureReason.ARTIFACT_HAZARD,
                str(exc),
                hazard=True,
            )
        return _StageRun(tuple(attempts), StageState.DONE)

    def _resolve_toolchain(self, plan: BuildPlan, stage: Stage) -> ToolchainSpec | None:
        if stage.toolchain is None:
            return None
        return self._selector.resolve(
            stage.toolchain.architecture, plan.feature_flags, kind=stage.toolchain.kind
        )

    def _execute(
        self,
        context: _PlanContext,
        stage: Stage,
        toolchain: ToolchainSpec | None,
        variables: Mapping[str, object],
        attempt: int,
    ) -> ExecutionResult:
        container_name = f"{self._run_id}-{context.plan.plan_id}-{stage.name}-{attempt}"
        with correlation_scope(stage=stage.name, attempt=str(attempt)):
            cache_key = toolchain.cache_key if toolchain is not None else None
            if stage.cache_write and cache_key is not None and self._registry_cache is not None:
                with self._registry_cache.write_lock(cache_key) as cache_dir:
                    result = self._executor.run(
                        stage,
                        toolchain,
                        context.workspace,
                        log_dir=context.log_dir,
                        variables=variables,
                        attempt=attempt,
                        container_name=container_name,
                    )
                    # Hand the cache back while no other writer can touch it.
                    if self._ran_as_other_identity(toolchain):
                        context.store.reown(cache_dir)
                    return result
            return self._executor.run(
                stage,
                toolchain,
                context.workspace,
                log_dir=context.log_dir,
                variables=variables,
                attempt=attempt,
                container_name=container_name,
            )

    def _collect_outputs(
        self, context: _PlanContext, stage: Stage, toolchain: ToolchainSpec | None
    ) -> None:
        """Hand container-written files back to the pipeline owner, then store outputs."""

        directory = stage_directory(stage, context.workspace)
        store = context.store
        if self._ran_as_other_identity(toolchain):
            for raw in stage.reown_paths:
                store.reown(directory / raw)
            for ref in stage.outputs:
                store.reown(directory / ref.path)
        for ref in stage.outputs:
            store.put(ref, directory / ref.path)

    def _ran_as_other_identity(self, toolchain: ToolchainSpec | None) -> bool:
        return (
            self._executor.backend is not SandboxBackend.NONE
            and toolchain is not None
            and toolchain.containerized
            and bool(toolchain.user)
        )

    def _stage_variables(
        self, context: _PlanContext, stage: Stage, toolchain: ToolchainSpec | None
    ) -> dict[str, object]:
        plan = context.plan
        cache_dir = ""
        if toolchain is not None and toolchain.cache_key and self._registry_cache is not None:
            cache_dir = self._registry_cache.directory_for(toolchain.cache_key).as_posix()
        variables: dict[str, object] = {
            "version": "",
            "tag": "",
        }
        variables.update(self._settings.release_variables)
        variables.update(
            {
                "arch": (
                    stage.toolchain.architecture
                    if stage.toolchain is not None
                    else plan.architecture
                ),
                "architectures": list(plan.architectures),
                "artifact_dir": context.store.plan_root.as_posix(),
                "cache_dir": cache_dir,
                "features": toolchain.features if toolchain is not None else "",
                "flags": sorted(plan.feature_flags),
                "image_scratch": (
                    context.image_scratch.as_posix() if context.image_scratch is not None else ""
                ),
                "inputs": {ref.key: context.store.get(ref).as_posix() for ref in stage.inputs},
                "outputs": {ref.key: ref.path for ref in stage.outputs},
                "plan_id": plan.plan_id,
                "platform": plan.platform,
                "source_dir": context.workspace.as_posix(),
                "target": toolchain.target if toolchain is not None else "",
            }
        )
        return variables

    def _cleanup_plan(self, context: _PlanContext, *, failed: bool) -> bool:
        """Remove plan scratch; returns ``False`` when it was retained for diagnostics."""

        removed = context.store.cleanup(
            failed=failed, retain_diagnostics=self._settings.retain_diagnostics
        )
        if not removed:
            return False
        safe_delete(context.workspace, context.scratch_base)
        if context.image_scratch is not None:
            safe_delete(context.image_scratch, context.image_scratch.parent)
        return True

    def _remove_empty_run_dirs(self) -> None:
        settings = self._settings
        roots = [settings.workspace_root, settings.artifact_root]
        if settings.memory_scratch_root is not None:
            roots.append(settings.memory_scratch_root)
        for root in roots:
            run_dir = root / self._run_id
            # Retained diagnostics keep their run directory.
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()

    def _transition(
        self,
        plan_id: str,
        item: _StageProgress,
        state: StageState,
        reason: FailureReason | None = None,
        detail: str = "",
    ) -> None:
        previous = item.state
        item.state = state
        item.reason = reason
        item.detail = detail
        self._logger.info(
            "pipeline_stage_transition",
            run_id=self._run_id,
            plan_id=plan_id,
            stage=item.stage.name,
            from_state=previous.value,
            to_state=state.value,
            reason=reason.value if reason is not None else None,
        )

    def _finish_plan(
        self,
        plan: BuildPlan,
        graph: StageGraph,
        progress: Mapping[str, _StageProgress],
        state: PlanState,
        *,
        published: tuple[Path, ...] = (),
        failed_groups: tuple[str, ...] = (),
        hazard: str | None = None,
        retained_scratch: bool = False,
        workers: Mapping[str, int] | None = None,
    ) -> PlanOutcome:
        outcome = PlanOutcome(
            plan=plan,
            state=state,
            stages=tuple(progress[stage.name].record() for stage in graph.stages),
            published=published,
            failed_groups=failed_groups,
            hazard=hazard,
            retained_scratch=retained_scratch,
        )
        failure = outcome.failure if not outcome.succeeded else None
        self._logger.info(
            "pipeline_plan_finished",
            run_id=self._run_id,
            plan_id=plan.plan_id,
            state=state.value,
            failed_stage=failure.name if failure is not None else None,
            failed_groups=list(failed_groups),
            published=[path.as_posix() for path in published],
            retained_scratch=retained_scratch,
            workers=dict(workers) if workers is not None else None,
        )
        return outcome


def _assert_unique_plan_ids(plans: Sequence[BuildPlan]) -> None:
    seen: set[str] = set()
    for plan in plans:
        if plan.plan_id in seen:
            raise ConfigurationError(f"duplicate plan id {plan.plan_id!r}")
        seen.add(plan.plan_id)


def _new_run_id() -> str:
    stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


__all__ = ["OrchestratorSettings", "PipelineOrchestrator"]
