"""
release-pipeline — release stage DAG for one build plan.

File: src/release_pipeline/planning/release_stages.py

Purpose
- Compile a ``BuildPlan`` into the ordered stages of a release build: backend compile,
  per-architecture container-init compile, package, image assembly and raw disk image.

Functional requirements
- Toolchains for every required architecture are resolved here, so an unsupported
  architecture fails before any stage runs.
- Command templates are validated against the stage variable set at compile time.
- Every command template can be replaced from configuration.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from release_pipeline.domain.errors import ConfigurationError
from release_pipeline.domain.models import (
    ArtifactRef,
    BuildPlan,
    Stage,
    ToolchainKind,
    ToolchainRequirement,
)
from release_pipeline.planning.stage_graph import StageGraph
from release_pipeline.sandbox.command_template import validate_template
from release_pipeline.toolchain.selector import ToolchainSelector

COMPILE_BACKEND: Final[str] = "compile-backend"
COMPILE_CONTAINER_INIT: Final[str] = "compile-container-init"
PACKAGE: Final[str] = "package"
ASSEMBLE_IMAGE: Final[str] = "assemble-image"
DISK_IMAGE: Final[str] = "disk-image"

STAGE_KINDS: Final[tuple[str, ...]] = (
    COMPILE_BACKEND,
    COMPILE_CONTAINER_INIT,
    PACKAGE,
    ASSEMBLE_IMAGE,
    DISK_IMAGE,
)

CONTAINER_INIT_GROUP: Final[str] = "container-init"
CONTAINER_INIT_BINARY: Final[str] = "embassy_container_init"
BACKEND_BINARY: Final[str] = "startbox"

DEFAULT_COMMANDS: Final[Mapping[str, str]] = {
    COMPILE_BACKEND: (
        "cargo build --release --locked --features {{ features }} --target={{ target }}"
    ),
    COMPILE_CONTAINER_INIT: (
        "cargo build --release --locked"
        "{% if features %} --features {{ features }}{% endif %}"
        " --bin " + CONTAINER_INIT_BINARY + " --target={{ target }}"
    ),
    PACKAGE: (
        "make deb VERSION={{ version }} TAG={{ tag }} OS_ARCH={{ platform }}"
        " BACKEND={{ inputs['backend@' ~ arch] }}"
        "{% for key, path in inputs | dictsort %}"
        "{% if key.startswith('container-init@') %}"
        " CONTAINER_INIT_{{ key.split('@')[1] | upper }}={{ path }}"
        "{% endif %}{% endfor %}"
        " OUTPUT={{ outputs['package'] }}"
    ),
    ASSEMBLE_IMAGE: (
        "{% if image_scratch %}IMAGE_SCRATCH={{ image_scratch }} {% endif %}"
        "./run-local-build.sh {{ platform }} {{ inputs['package'] }}"
    ),
    DISK_IMAGE: (
        "make {{ outputs['disk-image'] }} SQUASHFS={{ inputs['squashfs'] }}"
    ),
}

DEFAULT_TIMEOUTS: Final[Mapping[str, float]] = {
    COMPILE_BACKEND: 3600.0,
    COMPILE_CONTAINER_INIT: 1800.0,
    PACKAGE: 1800.0,
    ASSEMBLE_IMAGE: 7200.0,
    DISK_IMAGE: 3600.0,
}


@dataclass(frozen=True, slots=True)
class ReleaseStageSettings:
    """Command templates and timeouts per stage kind, with config overrides applied."""

    commands: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_COMMANDS))
    timeouts: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))

    def __post_init__(self) -> None:
        merged_commands = dict(DEFAULT_COMMANDS)
        merged_commands.update(self.commands)
        merged_timeouts = dict(DEFAULT_TIMEOUTS)
        merged_timeouts.update(self.timeouts)
        unknown = sorted((set(merged_commands) | set(merged_timeouts)) - set(STAGE_KINDS))
        if unknown:
            raise ConfigurationError(f"unknown stage kind(s): {', '.join(unknown)}")
        for kind, timeout in merged_timeouts.items():
            if timeout <= 0:
                raise ConfigurationError(f"stages.timeouts.{kind} must be > 0")
        object.__setattr__(self, "commands", merged_commands)
        object.__setattr__(self, "timeouts", {k: float(v) for k, v in merged_timeouts.items()})

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ReleaseStageSettings:
        section = config.get("stages", {})
        return cls(
            commands=dict(section.get("commands", {})),
            timeouts=dict(section.get("timeouts", {})),
        )


def build_release_stages(
    plan: BuildPlan,
    selector: ToolchainSelector,
    settings: ReleaseStageSettings | None = None,
) -> tuple[Stage, ...]:
    """Return the validated stage list for ``plan`` in declaration order."""

    config = settings if settings is not None else ReleaseStageSettings()
    for architecture in (plan.architecture, *plan.container_init_architectures):
        selector.resolve(architecture, plan.feature_flags)

    for kind in STAGE_KINDS:
        validate_template(kind, config.commands[kind])

    platform = plan.platform
    os_arch = {"OS_ARCH": platform}
    gnu_target = selector.resolve(plan.architecture, kind=ToolchainKind.GNU).target

    backend = ArtifactRef(
        name="backend",
        producer=COMPILE_BACKEND,
        path=f"target/{gnu_target}/release/{BACKEND_BINARY}",
        architecture=plan.architecture,
    )
    stages: list[Stage] = [
        Stage(
            name=COMPILE_BACKEND,
            command=config.commands[COMPILE_BACKEND],
            toolchain=ToolchainRequirement(ToolchainKind.GNU, plan.architecture),
            outputs=(backend,),
            timeout_seconds=config.timeouts[COMPILE_BACKEND],
            retryable=True,
            workdir="backend",
            reown_paths=("target",),
            env=os_arch,
            cache_write=True,
        )
    ]

    container_inits: list[ArtifactRef] = []
    for architecture in plan.container_init_architectures:
        name = f"{COMPILE_CONTAINER_INIT}-{architecture}"
        musl_target = selector.resolve(architecture, kind=ToolchainKind.MUSL).target
        ref = ArtifactRef(
            name="container-init",
            producer=name,
            path=f"target/{musl_target}/release/{CONTAINER_INIT_BINARY}",
            architecture=architecture,
        )
        container_inits.append(ref)
        stages.append(
            Stage(
                name=name,
                command=config.commands[COMPILE_CONTAINER_INIT],
                toolchain=ToolchainRequirement(ToolchainKind.MUSL, architecture),
                outputs=(ref,),
                timeout_seconds=config.timeouts[COMPILE_CONTAINER_INIT],
                retryable=True,
                workdir="libs",
                group=CONTAINER_INIT_GROUP,
                reown_paths=("target",),
                env=os_arch,
                cache_write=True,
            )
        )

    package = ArtifactRef(
        name="package",
        producer=PACKAGE,
        path=f"dist/{platform}.deb",
        publish_as=f"{platform}.deb",
    )
    stages.append(
        Stage(
            name=PACKAGE,
            command=config.commands[PACKAGE],
            toolchain=ToolchainRequirement(ToolchainKind.HOST, plan.architecture),
            inputs=(backend, *container_inits),
            outputs=(package,),
            timeout_seconds=config.timeouts[PACKAGE],
            env=os_arch,
        )
    )

    squashfs = ArtifactRef(
        name="squashfs",
        producer=ASSEMBLE_IMAGE,
        path=f"results/{platform}.squashfs",
        publish_as=f"{platform}.squashfs",
    )
    image_outputs = [squashfs]
    if plan.produce_iso:
        image_outputs.append(
            ArtifactRef(
                name="iso",
                producer=ASSEMBLE_IMAGE,
                path=f"results/{platform}.iso",
                publish_as=f"{platform}.iso",
            )
        )
    stages.append(
        Stage(
            name=ASSEMBLE_IMAGE,
            command=config.commands[ASSEMBLE_IMAGE],
            toolchain=ToolchainRequirement(ToolchainKind.HOST, plan.architecture),
            inputs=(package,),
            outputs=tuple(image_outputs),
            timeout_seconds=config.timeouts[ASSEMBLE_IMAGE],
            workdir="image-recipes",
        )
    )

    if plan.produce_disk_image:
        stages.append(
            Stage(
                name=DISK_IMAGE,
                command=config.commands[DISK_IMAGE],
                toolchain=ToolchainRequirement(ToolchainKind.HOST, plan.architecture),
                inputs=(squashfs,),
                outputs=(
                    ArtifactRef(
                        name="disk-image",
                        producer=DISK_IMAGE,
                        path=f"startos_{platform}.img",
                        publish_as=f"{platform}.img",
                    ),
                ),
                timeout_seconds=config.timeouts[DISK_IMAGE],
            )
        )

    # Raises for duplicate producers or dangling inputs in overridden layouts.
    StageGraph.from_stages(stages)
    return tuple(stages)


__all__ = [
    "ASSEMBLE_IMAGE",
    "COMPILE_BACKEND",
    "COMPILE_CONTAINER_INIT",
    "CONTAINER_INIT_GROUP",
    "DEFAULT_COMMANDS",
    "DEFAULT_TIMEOUTS",
    "DISK_IMAGE",
    "PACKAGE",
    "STAGE_KINDS",
    "ReleaseStageSettings",
    "build_release_stages",
]
