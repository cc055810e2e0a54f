"""Frozen dataclass domain models with strict validation."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePosixPath

from release_pipeline.domain.errors import (
    StageExecutionError,
    StageTimeoutError,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ToolchainKind(StrEnum):
    """Execution environments a stage can require."""

    GNU = "gnu"
    MUSL = "musl"
    HOST = "host"


class RunnerHint(StrEnum):
    STANDARD = "standard"
    FAST = "fast"


class FailureReason(StrEnum):
    EXIT_CODE = "exit_code"
    TIMEOUT = "timeout"
    OUTPUT_CONTRACT = "output_contract"
    LAUNCH_ERROR = "launch_error"
    ARTIFACT_HAZARD = "artifact_hazard"
    UPSTREAM_FAILED = "upstream_failed"
    CANCELLED = "cancelled"


class PlanState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageState(StrEnum):
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    ERRORED = "errored"
    SKIPPED = "skipped"


def _validate_name(value: str, path: str) -> None:
    if not isinstance(value, str) or not _NAME_RE.fullmatch(value):
        raise ValueError(f"{path}: invalid name {value!r}")


def _validate_relative_path(value: str, path: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{path}: must be a non-empty relative path")
    pure = PurePosixPath(value)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"{path}: must stay inside the stage workdir, got {value!r}")


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    """Logical, write-once build output.

    ``path`` is where the producing stage leaves the file, relative to its workdir.
    ``architecture`` tags fan-out outputs so one logical name can exist per architecture.
    """

    name: str
    producer: str
    path: str
    architecture: str | None = None
    publish_as: str | None = None

    def __post_init__(self) -> None:
        _validate_name(self.name, "ArtifactRef.name")
        _validate_name(self.producer, "ArtifactRef.producer")
        _validate_relative_path(self.path, "ArtifactRef.path")
        if self.publish_as is not None:
            _validate_name(self.publish_as, "ArtifactRef.publish_as")

    @property
    def key(self) -> str:
        if self.architecture is None:
            return self.name
        return f"{self.name}@{self.architecture}"


@dataclass(frozen=True, slots=True)
class ToolchainRequirement:
    kind: ToolchainKind
    architecture: str


@dataclass(frozen=True, slots=True)
class Stage:
    """One unit of work inside a plan; ordering comes from input/output matching."""

    name: str
    command: str
    toolchain: ToolchainRequirement | None = None
    inputs: tuple[ArtifactRef, ...] = ()
    outputs: tuple[ArtifactRef, ...] = ()
    timeout_seconds: float = 3600.0
    retryable: bool = False
    workdir: str = "."
    group: str | None = None
    reown_paths: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cache_write: bool = False

    def __post_init__(self) -> None:
        _validate_name(self.name, "Stage.name")
        if not isinstance(self.command, str) or not self.command.strip():
            raise ValueError(f"Stage {self.name}: command must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError(f"Stage {self.name}: timeout_seconds must be > 0")
        if self.workdir != ".":
            _validate_relative_path(self.workdir, f"Stage {self.name}.workdir")
        for index, ref in enumerate(self.outputs):
            if ref.producer != self.name:
                raise ValueError(
                    f"Stage {self.name}.outputs[{index}]: producer is {ref.producer!r}"
                )
        for index, raw in enumerate(self.reown_paths):
            _validate_relative_path(raw, f"Stage {self.name}.reown_paths[{index}]")
        object.__setattr__(self, "env", dict(sorted(self.env.items())))


@dataclass(frozen=True, slots=True)
class Mount:
    source: str
    target: str
    read_only: bool = False

    def as_volume(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


@dataclass(frozen=True, slots=True)
class ToolchainSpec:
    """Resolved execution context for a stage."""

    architecture: str
    kind: ToolchainKind
    image: str | None
    target: str
    mounts: tuple[Mount, ...]
    environment: tuple[tuple[str, str], ...]
    user: str | None
    features: str
    source_mount: str | None
    cache_key: str | None

    @property
    def env(self) -> dict[str, str]:
        return dict(self.environment)

    @property
    def containerized(self) -> bool:
        return self.image is not None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "architecture": self.architecture,
            "kind": self.kind.value,
            "image": self.image,
            "target": self.target,
            "mounts": [mount.as_volume() for mount in self.mounts],
            "environment": {key: value for key, value in self.environment},
            "user": self.user,
            "features": self.features,
            "source_mount": self.source_mount,
            "cache_key": self.cache_key,
        }


@dataclass(frozen=True, slots=True)
class RunnerAssignment:
    """Runner resource class and space-saving strategies chosen for one plan."""

    hint: RunnerHint
    label: str
    resource_class: str
    max_workers: int
    memory_scratch: bool = False
    image_memory_scratch: bool = False
    free_disk_space: bool = False

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ValueError("RunnerAssignment.max_workers must be > 0")


@dataclass(frozen=True, slots=True)
class BuildPlan:
    """One fully resolved (platform, architecture, feature-flag set) execution unit."""

    platform: str
    architecture: str
    architectures: tuple[str, ...]
    feature_flags: frozenset[str]
    runner: RunnerAssignment
    container_init_architectures: tuple[str, ...] = ("x86_64", "aarch64")
    produce_iso: bool = True
    produce_disk_image: bool = False

    def __post_init__(self) -> None:
        _validate_name(self.platform, "BuildPlan.platform")
        if not self.architectures:
            raise ValueError(f"BuildPlan {self.platform}: architectures must not be empty")
        if self.architecture not in self.architectures:
            raise ValueError(
                f"BuildPlan {self.platform}: architecture {self.architecture!r} "
                "is not part of its architecture set"
            )
        object.__setattr__(self, "feature_flags", frozenset(self.feature_flags))

    @property
    def plan_id(self) -> str:
        return self.platform

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "plan_id": self.plan_id,
            "platform": self.platform,
            "architecture": self.architecture,
            "architectures": list(self.architectures),
            "feature_flags": sorted(self.feature_flags),
            "container_init_architectures": list(self.container_init_architectures),
            "produce_iso": self.produce_iso,
            "produce_disk_image": self.produce_disk_image,
            "runner": {
                "hint": self.runner.hint.value,
                "label": self.runner.label,
                "resource_class": self.runner.resource_class,
                "max_workers": self.runner.max_workers,
                "memory_scratch": self.runner.memory_scratch,
                "image_memory_scratch": self.runner.image_memory_scratch,
                "free_disk_space": self.runner.free_disk_space,
            },
        }


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Immutable record of one stage attempt."""

    stage: str
    attempt: int
    exit_code: int | None
    duration_ms: float
    log_ref: Path
    failed: bool
    reason: FailureReason | None = None
    detail: str = ""
    missing_outputs: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.attempt <= 0:
            raise ValueError("ExecutionResult.attempt must be > 0")
        if self.failed and self.reason is None:
            raise ValueError("failed ExecutionResult requires a reason")
        if not self.failed and self.reason is not None:
            raise ValueError("successful ExecutionResult must not carry a reason")

    @property
    def timed_out(self) -> bool:
        return self.reason is FailureReason.TIMEOUT

    def error(self) -> StageExecutionError:
        if not self.failed or self.reason is None:
            raise ValueError(f"stage {self.stage!r} attempt {self.attempt} did not fail")
        if self.reason is FailureReason.TIMEOUT:
            return StageTimeoutError(self.stage, self.reason, self)
        return StageExecutionError(self.stage, self.reason, self)


__all__ = [
    "ArtifactRef",
    "BuildPlan",
    "ExecutionResult",
    "FailureReason",
    "JSONScalar",
    "JSONValue",
    "Mount",
    "PlanState",
    "RunnerAssignment",
    "RunnerHint",
    "Stage",
    "StageState",
    "ToolchainKind",
    "ToolchainRequirement",
    "ToolchainSpec",
]
