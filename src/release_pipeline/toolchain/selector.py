"""Deterministic cross-compilation toolchain resolution."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from release_pipeline.domain.errors import UnsupportedArchitectureError
from release_pipeline.domain.models import Mount, ToolchainKind, ToolchainSpec
from release_pipeline.toolchain.flags import feature_string

DEFAULT_ARCHITECTURES: Final[tuple[str, ...]] = ("x86_64", "aarch64")

_TARGET_ABI: Final[dict[ToolchainKind, str]] = {
    ToolchainKind.GNU: "gnu",
    ToolchainKind.MUSL: "musl",
    ToolchainKind.HOST: "gnu",
}


@dataclass(frozen=True, slots=True)
class ToolchainSettings:
    """Explicit inputs of the selector; nothing is read from the environment."""

    architectures: tuple[str, ...] = DEFAULT_ARCHITECTURES
    gnu_image: str = "start9/rust-arm-cross:{arch}"
    musl_image: str = "messense/rust-musl-cross:{arch}-musl"
    gnu_registry_mount: str = "/usr/local/cargo/registry"
    musl_registry_mount: str = "/root/.cargo/registry"
    source_mount: str = "/home/rust/src"
    container_user: str = "root"
    gnu_base_features: tuple[str, ...] = ("avahi-alias",)
    musl_base_features: tuple[str, ...] = ()
    registry_cache_root: Path | None = None
    extra_env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.architectures:
            raise ValueError("ToolchainSettings.architectures must not be empty")
        for template_name in ("gnu_image", "musl_image"):
            template = getattr(self, template_name)
            if not template.strip():
                raise ValueError(f"ToolchainSettings.{template_name} must not be empty")
        object.__setattr__(self, "extra_env", dict(sorted(self.extra_env.items())))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ToolchainSettings:
        defaults = cls()
        section = config.get("toolchains", {})
        paths = config.get("paths", {})
        cache_root = paths.get("registry_cache")
        return cls(
            architectures=tuple(section.get("architectures", defaults.architectures)),
            gnu_image=section.get("gnu_image", defaults.gnu_image),
            musl_image=section.get("musl_image", defaults.musl_image),
            gnu_registry_mount=section.get("gnu_registry_mount", defaults.gnu_registry_mount),
            musl_registry_mount=section.get("musl_registry_mount", defaults.musl_registry_mount),
            source_mount=section.get("source_mount", defaults.source_mount),
            container_user=section.get("container_user", defaults.container_user),
            gnu_base_features=tuple(section.get("gnu_base_features", defaults.gnu_base_features)),
            musl_base_features=tuple(
                section.get("musl_base_features", defaults.musl_base_features)
            ),
            registry_cache_root=Path(cache_root) if cache_root else None,
            extra_env=dict(section.get("env", {})),
        )


class ToolchainSelector:
    """Resolve the execution context a stage runs under.

    ``resolve`` is a pure function of its arguments and the settings given at
    construction, so identical inputs always produce equal ``ToolchainSpec`` values.
    """

    __slots__ = ("_settings",)

    def __init__(self, settings: ToolchainSettings | None = None) -> None:
        self._settings = settings if settings is not None else ToolchainSettings()

    @property
    def settings(self) -> ToolchainSettings:
        return self._settings

    @property
    def supported_architectures(self) -> tuple[str, ...]:
        return self._settings.architectures

    def resolve(
        self,
        architecture: str,
        feature_flags: Iterable[str] = (),
        *,
        kind: ToolchainKind | str = ToolchainKind.GNU,
    ) -> ToolchainSpec:
        resolved_kind = ToolchainKind(kind)
        arch = architecture.strip() if isinstance(architecture, str) else ""
        if arch not in self._settings.architectures:
            raise UnsupportedArchitectureError(architecture, self._settings.architectures)

        target = f"{arch}-unknown-linux-{_TARGET_ABI[resolved_kind]}"
        features = feature_string(self._base_features(resolved_kind), feature_flags)

        environment = dict(self._settings.extra_env)
        environment["ARCH"] = arch
        environment["BUILD_TARGET"] = target
        environment["BUILD_FEATURES"] = features

        if resolved_kind is ToolchainKind.HOST:
            return ToolchainSpec(
                architecture=arch,
                kind=resolved_kind,
                image=None,
                target=target,
                mounts=(),
                environment=tuple(sorted(environment.items())),
                user=None,
                features=features,
                source_mount=None,
                cache_key=None,
            )

        cache_key = f"{resolved_kind.value}-{arch}"
        mounts: tuple[Mount, ...] = ()
        if self._settings.registry_cache_root is not None:
            registry_target = (
                self._settings.gnu_registry_mount
                if resolved_kind is ToolchainKind.GNU
                else self._settings.musl_registry_mount
            )
            source = (self._settings.registry_cache_root / cache_key).as_posix()
            mounts = (Mount(source=source, target=registry_target),)

        return ToolchainSpec(
            architecture=arch,
            kind=resolved_kind,
            image=self._image(resolved_kind, arch),
            target=target,
            mounts=mounts,
            environment=tuple(sorted(environment.items())),
            user=self._settings.container_user,
            features=features,
            source_mount=self._settings.source_mount,
            cache_key=cache_key,
        )

    def _image(self, kind: ToolchainKind, arch: str) -> str:
        if kind is ToolchainKind.GNU:
            return self._settings.gnu_image.format(arch=arch)
        return self._settings.musl_image.format(arch=arch)

    def _base_features(self, kind: ToolchainKind) -> tuple[str, ...]:
        if kind is ToolchainKind.MUSL:
            return self._settings.musl_base_features
        return self._settings.gnu_base_features


__all__ = ["DEFAULT_ARCHITECTURES", "ToolchainSelector", "ToolchainSettings"]
