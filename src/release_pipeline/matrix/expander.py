"""Expand a matrix definition into ordered, immutable build plans."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from release_pipeline.constants import ALL_PLATFORMS
from release_pipeline.domain.errors import MatrixDefinitionError
from release_pipeline.domain.models import BuildPlan, RunnerAssignment, RunnerHint
from release_pipeline.matrix.definition import MatrixDefinition, PlatformEntry


_BYTES_PER_GIB: Final[int] = 1024 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class RunnerWorkers:
    """Intra-plan stage concurrency granted to each runner resource class."""

    standard: int = 2
    fast: int = 4
    fast_dedicated: int = 8

    def __post_init__(self) -> None:
        for name in ("standard", "fast", "fast_dedicated"):
            if getattr(self, name) <= 0:
                raise ValueError(f"RunnerWorkers.{name} must be > 0")


def expand(
    definition: MatrixDefinition,
    platform_filter: str = ALL_PLATFORMS,
    *,
    runner_hint: RunnerHint | str = RunnerHint.STANDARD,
    feature_flags: Iterable[str] = (),
    workers: RunnerWorkers | None = None,
    memory_budget_bytes: int | None = None,
) -> tuple[BuildPlan, ...]:
    """
    Return one plan per selected platform, in declaration order.

    ``platform_filter`` is ``ALL`` or one declared platform name. The result depends
    only on the arguments, so repeated calls yield equal tuples.
    """

    hint = _coerce_hint(runner_hint)
    limits = workers if workers is not None else RunnerWorkers()
    flags = frozenset(feature_flags)
    selector = platform_filter.strip() if isinstance(platform_filter, str) else ""
    if not selector:
        raise MatrixDefinitionError("platform filter must be 'ALL' or a platform name")

    if selector == ALL_PLATFORMS:
        selected = definition.platforms
        explicit = False
    else:
        selected = (definition.get(selector),)
        explicit = True

    return tuple(
        BuildPlan(
            platform=platform.name,
            architecture=platform.architecture,
            architectures=platform.architectures,
            feature_flags=flags,
            runner=_assign_runner(
                definition,
                platform,
                hint=hint,
                explicit=explicit,
                workers=limits,
                memory_budget_bytes=memory_budget_bytes,
            ),
            container_init_architectures=(
                platform.container_init_architectures
                if platform.container_init_architectures is not None
                else definition.container_init_architectures
            ),
            produce_iso=platform.iso,
            produce_disk_image=platform.disk_image,
        )
        for platform in selected
    )


def _assign_runner(
    definition: MatrixDefinition,
    platform: PlatformEntry,
    *,
    hint: RunnerHint,
    explicit: bool,
    workers: RunnerWorkers,
    memory_budget_bytes: int | None,
) -> RunnerAssignment:
    if hint is RunnerHint.STANDARD:
        return RunnerAssignment(
            hint=hint,
            label=definition.default_runner,
            resource_class="standard",
            max_workers=workers.standard,
            free_disk_space=True,
        )

    fits_in_memory = _fits_in_memory(platform, memory_budget_bytes)
    # Explicitly selected platforms run on the dedicated runner with an in-memory workspace.
    return RunnerAssignment(
        hint=hint,
        label=platform.fast_runners[1] if explicit else platform.fast_runners[0],
        resource_class="fast-dedicated" if explicit else "fast",
        max_workers=workers.fast_dedicated if explicit else workers.fast,
        memory_scratch=fits_in_memory and (platform.memory_scratch or explicit),
        image_memory_scratch=fits_in_memory and platform.memory_scratch,
        free_disk_space=False,
    )


def _fits_in_memory(platform: PlatformEntry, memory_budget_bytes: int | None) -> bool:
    if memory_budget_bytes is None or platform.scratch_gib is None:
        return True
    return platform.scratch_gib * _BYTES_PER_GIB <= memory_budget_bytes


def _coerce_hint(value: RunnerHint | str) -> RunnerHint:
    if isinstance(value, RunnerHint):
        return value
    try:
        return RunnerHint(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in RunnerHint)
        raise MatrixDefinitionError(
            f"unsupported runner hint {value!r}; expected one of: {allowed}"
        ) from exc


__all__ = ["ALL_PLATFORMS", "RunnerWorkers", "expand"]
