"""
release-pipeline — platform matrix definition.

File: src/release_pipeline/matrix/definition.py

Purpose
- Declarative list of target platforms, their architecture sets and runner classes.
- Strict parsing from YAML (or any mapping) with path-qualified error messages.

Functional requirements
- Platform order is preserved exactly as declared; expansion relies on it.
- Unknown keys and malformed values raise ``MatrixDefinitionError``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml

from release_pipeline.domain.errors import MatrixDefinitionError

DEFAULT_STANDARD_RUNNER: Final[str] = "ubuntu-22.04"
DEFAULT_CONTAINER_INIT_ARCHITECTURES: Final[tuple[str, ...]] = ("x86_64", "aarch64")

_PLATFORM_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset(
    {"platforms", "default_runner", "container_init_architectures"}
)
_PLATFORM_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "architectures",
        "architecture",
        "fast_runners",
        "memory_scratch",
        "iso",
        "disk_image",
        "scratch_gib",
        "container_init_architectures",
    }
)


@dataclass(frozen=True, slots=True)
class PlatformEntry:
    """One declared hardware platform.

    ``fast_runners`` holds the shared runner used when every platform is built and
    the dedicated runner used when this platform is selected on its own.
    """

    name: str
    architectures: tuple[str, ...]
    architecture: str
    fast_runners: tuple[str, str]
    memory_scratch: bool = False
    iso: bool = True
    disk_image: bool = False
    scratch_gib: float | None = None
    container_init_architectures: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class MatrixDefinition:
    platforms: tuple[PlatformEntry, ...]
    default_runner: str = DEFAULT_STANDARD_RUNNER
    container_init_architectures: tuple[str, ...] = DEFAULT_CONTAINER_INIT_ARCHITECTURES

    @property
    def platform_names(self) -> tuple[str, ...]:
        return tuple(platform.name for platform in self.platforms)

    def get(self, name: str) -> PlatformEntry:
        for platform in self.platforms:
            if platform.name == name:
                return platform
        raise MatrixDefinitionError(
            f"unknown platform {name!r}; declared: {', '.join(self.platform_names)}"
        )


def parse_matrix_definition(payload: object) -> MatrixDefinition:
    """Validate ``payload`` and build a :class:`MatrixDefinition`."""

    root = _expect_mapping(payload, "matrix")
    _reject_unknown_keys(root, _TOP_LEVEL_KEYS, "matrix")

    default_runner = _expect_label(
        root.get("default_runner", DEFAULT_STANDARD_RUNNER), "matrix.default_runner"
    )
    container_init = _expect_names(
        root.get("container_init_architectures", list(DEFAULT_CONTAINER_INIT_ARCHITECTURES)),
        "matrix.container_init_architectures",
    )

    raw_platforms = root.get("platforms")
    if not isinstance(raw_platforms, Sequence) or isinstance(raw_platforms, (str, bytes)):
        raise MatrixDefinitionError("matrix.platforms: expected a list of platforms")
    if not raw_platforms:
        raise MatrixDefinitionError("matrix.platforms: at least one platform is required")

    platforms: list[PlatformEntry] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_platforms):
        platform = _parse_platform(raw, f"matrix.platforms[{index}]", default_runner)
        if platform.name in seen:
            raise MatrixDefinitionError(
                f"matrix.platforms[{index}].name: duplicate platform {platform.name!r}"
            )
        seen.add(platform.name)
        platforms.append(platform)

    return MatrixDefinition(
        platforms=tuple(platforms),
        default_runner=default_runner,
        container_init_architectures=container_init,
    )


def load_matrix_definition(path: str | Path) -> MatrixDefinition:
    """Load a matrix definition from a YAML file."""

    resolved = Path(path).expanduser()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise MatrixDefinitionError(f"unable to read matrix definition {resolved}: {exc}") from exc
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MatrixDefinitionError(f"invalid YAML in {resolved}: {exc}") from exc
    return parse_matrix_definition(payload)


def _parse_platform(raw: object, path: str, default_runner: str) -> PlatformEntry:
    entry = _expect_mapping(raw, path)
    _reject_unknown_keys(entry, _PLATFORM_KEYS, path)

    name = entry.get("name")
    if not isinstance(name, str) or not _PLATFORM_NAME_RE.fullmatch(name):
        raise MatrixDefinitionError(f"{path}.name: expected a lowercase platform name")

    architectures = _expect_names(entry.get("architectures"), f"{path}.architectures")
    if not architectures:
        raise MatrixDefinitionError(
            f"{path}.architectures: at least one architecture is required"
        )
    architecture = entry.get("architecture", architectures[0])
    if architecture not in architectures:
        raise MatrixDefinitionError(
            f"{path}.architecture: {architecture!r} is not in {list(architectures)}"
        )

    raw_runners = entry.get("fast_runners", [default_runner])
    runners = _expect_names(raw_runners, f"{path}.fast_runners", unique=False)
    if len(runners) not in (1, 2):
        raise MatrixDefinitionError(f"{path}.fast_runners: expected one or two runner labels")
    fast_runners = (runners[0], runners[-1])

    scratch_gib = entry.get("scratch_gib")
    if scratch_gib is not None:
        if isinstance(scratch_gib, bool) or not isinstance(scratch_gib, (int, float)):
            raise MatrixDefinitionError(f"{path}.scratch_gib: expected a number")
        if scratch_gib <= 0:
            raise MatrixDefinitionError(f"{path}.scratch_gib: must be > 0")
        scratch_gib = float(scratch_gib)

    container_init: tuple[str, ...] | None = None
    if "container_init_architectures" in entry:
        container_init = _expect_names(
            entry["container_init_architectures"], f"{path}.container_init_architectures"
        )

    return PlatformEntry(
        name=name,
        architectures=architectures,
        architecture=architecture,
        fast_runners=fast_runners,
        memory_scratch=_expect_bool(
            entry.get("memory_scratch", False), f"{path}.memory_scratch"
        ),
        iso=_expect_bool(entry.get("iso", True), f"{path}.iso"),
        disk_image=_expect_bool(entry.get("disk_image", False), f"{path}.disk_image"),
        scratch_gib=scratch_gib,
        container_init_architectures=container_init,
    )


def _expect_mapping(value: object, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise MatrixDefinitionError(f"{path}: expected a mapping, got {type(value).__name__}")
    return value


def _reject_unknown_keys(value: Mapping[str, Any], allowed: frozenset[str], path: str) -> None:
    unknown = sorted(str(key) for key in value if key not in allowed)
    if unknown:
        raise MatrixDefinitionError(f"{path}: unknown key(s): {', '.join(unknown)}")


def _expect_label(value: object, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MatrixDefinitionError(f"{path}: expected a non-empty string")
    return value.strip()


def _expect_names(value: object, path: str, *, unique: bool = True) -> tuple[str, ...]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise MatrixDefinitionError(f"{path}: expected a list of strings")
    names: list[str] = []
    for index, item in enumerate(value):
        label = _expect_label(item, f"{path}[{index}]")
        if unique and label in names:
            raise MatrixDefinitionError(f"{path}[{index}]: duplicate value {label!r}")
        names.append(label)
    return tuple(names)


def _expect_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        raise MatrixDefinitionError(f"{path}: expected true or false")
    return value


_X86_FAST_RUNNERS: Final[list[str]] = ["buildjet-32vcpu-ubuntu-2204"] * 2
_ARM_FAST_RUNNERS: Final[list[str]] = [
    "buildjet-16vcpu-ubuntu-2204-arm",
    "buildjet-32vcpu-ubuntu-2204-arm",
]

DEFAULT_MATRIX: Final[MatrixDefinition] = parse_matrix_definition(
    {
        "default_runner": DEFAULT_STANDARD_RUNNER,
        "container_init_architectures": list(DEFAULT_CONTAINER_INIT_ARCHITECTURES),
        "platforms": [
            {
                "name": "x86_64",
                "architectures": ["x86_64"],
                "fast_runners": _X86_FAST_RUNNERS,
                "memory_scratch": True,
            },
            {
                "name": "x86_64-nonfree",
                "architectures": ["x86_64"],
                "fast_runners": _X86_FAST_RUNNERS,
                "memory_scratch": True,
            },
            {
                "name": "aarch64",
                "architectures": ["aarch64"],
                "fast_runners": _ARM_FAST_RUNNERS,
            },
            {
                "name": "aarch64-nonfree",
                "architectures": ["aarch64"],
                "fast_runners": _ARM_FAST_RUNNERS,
            },
            {
                "name": "raspberrypi",
                "architectures": ["aarch64"],
                "fast_runners": _ARM_FAST_RUNNERS,
                "iso": False,
                "disk_image": True,
            },
        ],
    }
)


__all__ = [
    "DEFAULT_CONTAINER_INIT_ARCHITECTURES",
    "DEFAULT_MATRIX",
    "DEFAULT_STANDARD_RUNNER",
    "MatrixDefinition",
    "PlatformEntry",
    "load_matrix_definition",
    "parse_matrix_definition",
]
