"""
release-pipeline — configuration schema and validation.

File: src/release_pipeline/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Unknown fields are rejected; secrets are never embedded in the file.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from release_pipeline.constants import CONFIG_SCHEMA_VERSION
from release_pipeline.domain.errors import ConfigurationError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_ARCH_PATTERN = re.compile(r"^[a-z0-9_]+$")
_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "credential", "credentials", "auth"}
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "artifact_root"),
    ("paths", "publish_dir"),
    ("paths", "log_dir"),
    ("paths", "registry_cache"),
    ("paths", "memory_scratch_root"),
    ("paths", "source_dir"),
    ("paths", "matrix"),
)

SANDBOX_BACKENDS: Final[tuple[str, ...]] = ("none", "docker", "podman")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class PathsConfig(TypedDict, total=False):
    workspace_root: str
    artifact_root: str
    publish_dir: str
    log_dir: str
    registry_cache: str
    memory_scratch_root: str
    source_dir: str
    matrix: str


class ExecutorConfig(TypedDict):
    backend: str
    poll_interval_seconds: float
    kill_grace_seconds: float
    inherit_host_env: bool


class ResourcesConfig(TypedDict):
    max_parallel_plans: int
    standard_workers: int
    fast_workers: int
    fast_dedicated_workers: int
    memory_budget_mb: int


class ArtifactsConfig(TypedDict):
    retain_diagnostics: bool
    owner: str


class ToolchainsConfig(TypedDict):
    architectures: list[str]
    gnu_image: str
    musl_image: str
    gnu_registry_mount: str
    musl_registry_mount: str
    source_mount: str
    container_user: str
    gnu_base_features: list[str]
    musl_base_features: list[str]
    env: dict[str, str]


class ReleaseConfig(TypedDict):
    channel: str
    version: str
    tag: str
    flag_markers: list[str]


class StagesConfig(TypedDict):
    commands: dict[str, str]
    timeouts: dict[str, float]


class ObservabilityConfig(TypedDict):
    log_level: str
    log_to_stdout: bool
    redact_secrets: bool


class PipelineConfig(TypedDict):
    meta: dict[str, int]
    paths: PathsConfig
    executor: ExecutorConfig
    resources: ResourcesConfig
    artifacts: ArtifactsConfig
    toolchains: ToolchainsConfig
    release: ReleaseConfig
    stages: StagesConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[PipelineConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "workspace_root": "workspaces/",
        "artifact_root": "artifacts/",
        "publish_dir": "dist/",
        "log_dir": "logs/",
        "registry_cache": ".cache/registry/",
        "memory_scratch_root": "/dev/shm/release-pipeline",
    },
    "executor": {
        "backend": "none",
        "poll_interval_seconds": 0.5,
        "kill_grace_seconds": 5.0,
        "inherit_host_env": False,
    },
    "resources": {
        "max_parallel_plans": 2,
        "standard_workers": 2,
        "fast_workers": 4,
        "fast_dedicated_workers": 8,
        "memory_budget_mb": 0,
    },
    "artifacts": {
        "retain_diagnostics": False,
        "owner": "",
    },
    "toolchains": {
        "architectures": ["x86_64", "aarch64"],
        "gnu_image": "start9/rust-arm-cross:{arch}",
        "musl_image": "messense/rust-musl-cross:{arch}-musl",
        "gnu_registry_mount": "/usr/local/cargo/registry",
        "musl_registry_mount": "/root/.cargo/registry",
        "source_mount": "/home/rust/src",
        "container_user": "root",
        "gnu_base_features": ["avahi-alias"],
        "musl_base_features": [],
        "env": {},
    },
    "release": {
        "channel": "",
        "version": "0.3.x",
        "tag": "",
        "flag_markers": ["dev", "unstable"],
    },
    "stages": {
        "commands": {},
        "timeouts": {},
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ConfigurationError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> PipelineConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "paths": _validate_paths,
        "executor": _validate_executor,
        "resources": _validate_resources,
        "artifacts": _validate_artifacts,
        "toolchains": _validate_toolchains,
        "release": _validate_release,
        "stages": _validate_stages,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(root, set(validators), "", issues)

    normalized: dict[str, Any] = {}
    for key in sorted(validators):
        raw = root.get(key)
        if raw is None:
            issues.add(key, "missing required section")
            continue
        section = _as_object(raw, key, issues)
        if section is not None:
            normalized[key] = validators[key](section, key, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Return a copy with environment values and sensitive-looking keys masked."""

    redacted = merge_config({}, config)
    toolchains = redacted.get("toolchains")
    if isinstance(toolchains, dict) and isinstance(toolchains.get("env"), dict):
        toolchains["env"] = {name: "***REDACTED***" for name in sorted(toolchains["env"])}
    _mask_sensitive(redacted)
    return redacted


def _mask_sensitive(payload: dict[str, Any]) -> None:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, dict):
            _mask_sensitive(value)
        elif _looks_sensitive_key(key):
            payload[key] = "***REDACTED***"


def _validate_meta(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    version = _as_int(payload.get("schema_version"), _join(path, "schema_version"), issues, minimum=1)
    if version is not None and version != ConfigSchemaVersion:
        issues.add(
            _join(path, "schema_version"),
            f"schema version {version} is not supported (expected {ConfigSchemaVersion})",
        )
    return {"schema_version": version}


def _validate_paths(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    required = {
        "workspace_root",
        "artifact_root",
        "publish_dir",
        "log_dir",
        "registry_cache",
        "memory_scratch_root",
    }
    optional = {"source_dir", "matrix"}
    _reject_unknown_keys(payload, required | optional, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(payload):
        if key in required | optional:
            out[key] = _as_path_text(payload[key], _join(path, key), issues)
    return out


def _validate_executor(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    fields = {"backend", "poll_interval_seconds", "kill_grace_seconds", "inherit_host_env"}
    _reject_unknown_keys(payload, fields, path, issues)
    _require_keys(payload, fields, path, issues)
    poll = _as_float(payload.get("poll_interval_seconds"), _join(path, "poll_interval_seconds"), issues)
    if poll is not None and poll <= 0:
        issues.add(_join(path, "poll_interval_seconds"), "must be > 0")
    return {
        "backend": _as_enum(
            payload.get("backend"), _join(path, "backend"), issues, allowed_values=SANDBOX_BACKENDS
        ),
        "poll_interval_seconds": poll,
        "kill_grace_seconds": _as_float(
            payload.get("kill_grace_seconds"), _join(path, "kill_grace_seconds"), issues, minimum=0.0
        ),
        "inherit_host_env": _as_bool(
            payload.get("inherit_host_env"), _join(path, "inherit_host_env"), issues
        ),
    }


def _validate_resources(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    positive = {"max_parallel_plans", "standard_workers", "fast_workers", "fast_dedicated_workers"}
    fields = positive | {"memory_budget_mb"}
    _reject_unknown_keys(payload, fields, path, issues)
    _require_keys(payload, fields, path, issues)
    out: dict[str, Any] = {
        key: _as_int(payload.get(key), _join(path, key), issues, minimum=1) for key in sorted(positive)
    }
    out["memory_budget_mb"] = _as_int(
        payload.get("memory_budget_mb"), _join(path, "memory_budget_mb"), issues, minimum=0
    )
    return out


def _validate_artifacts(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    fields = {"retain_diagnostics", "owner"}
    _reject_unknown_keys(payload, fields, path, issues)
    _require_keys(payload, fields, path, issues)
    owner = payload.get("owner")
    if not isinstance(owner, str):
        issues.add(_join(path, "owner"), f"expected string, got {type(owner).__name__}")
        owner = None
    return {
        "retain_diagnostics": _as_bool(
            payload.get("retain_diagnostics"), _join(path, "retain_diagnostics"), issues
        ),
        "owner": owner.strip() if owner is not None else None,
    }


def _validate_toolchains(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    text_fields = {
        "gnu_image",
        "musl_image",
        "gnu_registry_mount",
        "musl_registry_mount",
        "source_mount",
        "container_user",
    }
    list_fields = {"architectures", "gnu_base_features", "musl_base_features"}
    fields = text_fields | list_fields | {"env"}
    _reject_unknown_keys(payload, fields, path, issues)
    _require_keys(payload, fields, path, issues)

    out: dict[str, Any] = {
        key: _as_str(payload.get(key), _join(path, key), issues) for key in sorted(text_fields)
    }
    for key in sorted(list_fields):
        out[key] = _as_str_list(payload.get(key), _join(path, key), issues)
    architectures = out.get("architectures") or []
    if not architectures and "architectures" in payload:
        issues.add(_join(path, "architectures"), "at least one architecture is required")
    for index, arch in enumerate(architectures):
        if not _ARCH_PATTERN.fullmatch(arch):
            issues.add(f"{_join(path, 'architectures')}[{index}]", f"invalid architecture {arch!r}")
    for key in ("gnu_image", "musl_image"):
        template = out.get(key)
        if template is not None and "{arch}" not in template:
            issues.add(_join(path, key), "image template must contain '{arch}'")

    env_path = _join(path, "env")
    env = _as_object(payload.get("env"), env_path, issues) or {}
    out["env"] = {}
    for name in sorted(env):
        if not _ENV_NAME_PATTERN.fullmatch(name):
            issues.add(_join(env_path, name), "must be an env var name (example: CARGO_HOME)")
            continue
        if _looks_sensitive_key(name):
            issues.add(_join(env_path, name), "embedded secret values are forbidden")
            continue
        value = env[name]
        if not isinstance(value, str):
            issues.add(_join(env_path, name), f"expected string, got {type(value).__name__}")
            continue
        out["env"][name] = value
    return out


def _validate_release(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    fields = {"channel", "version", "tag", "flag_markers"}
    _reject_unknown_keys(payload, fields, path, issues)
    _require_keys(payload, fields, path, issues)
    out: dict[str, Any] = {}
    for key in ("channel", "tag"):
        value = payload.get(key)
        if not isinstance(value, str):
            issues.add(_join(path, key), f"expected string, got {type(value).__name__}")
            continue
        out[key] = value.strip()
    out["version"] = _as_str(payload.get("version"), _join(path, "version"), issues)
    out["flag_markers"] = _as_str_list(
        payload.get("flag_markers"), _join(path, "flag_markers"), issues
    )
    return out


def _validate_stages(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    fields = {"commands", "timeouts"}
    _reject_unknown_keys(payload, fields, path, issues)
    out: dict[str, Any] = {"commands": {}, "timeouts": {}}
    commands_path = _join(path, "commands")
    commands = _as_object(payload.get("commands", {}), commands_path, issues) or {}
    for kind in sorted(commands):
        parsed = _as_str(commands[kind], _join(commands_path, kind), issues)
        if parsed is not None:
            out["commands"][kind] = parsed
    timeouts_path = _join(path, "timeouts")
    timeouts = _as_object(payload.get("timeouts", {}), timeouts_path, issues) or {}
    for kind in sorted(timeouts):
        parsed_timeout = _as_float(timeouts[kind], _join(timeouts_path, kind), issues)
        if parsed_timeout is not None and parsed_timeout <= 0:
            issues.add(_join(timeouts_path, kind), "must be > 0")
            continue
        if parsed_timeout is not None:
            out["timeouts"][kind] = parsed_timeout
    return out


def _validate_observability(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    fields = {"log_level", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, fields, path, issues)
    _require_keys(payload, fields, path, issues)
    level = payload.get("log_level")
    return {
        "log_level": _as_enum(
            level.upper() if isinstance(level, str) else level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        ),
        "log_to_stdout": _as_bool(payload.get("log_to_stdout"), _join(path, "log_to_stdout"), issues),
        "redact_secrets": _as_bool(
            payload.get("redact_secrets"), _join(path, "redact_secrets"), issues
        ),
    }


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str]:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return []
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is None:
            continue
        if parsed in out:
            issues.add(f"{path}[{index}]", f"duplicate value {parsed!r}")
            continue
        out.append(parsed)
    return out


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    tokens = tuple(token for token in re.split(r"[^a-z0-9]+", key.lower()) if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "SANDBOX_BACKENDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "PipelineConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
