"""Unit tests for config schema defaults and validation."""

from __future__ import annotations

import pytest

from release_pipeline.config import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)


def _with(overlay: dict[str, object]) -> dict[str, object]:
    return merge_config(default_config(), overlay)


def test_defaults_are_valid_and_copied() -> None:
    first = default_config()
    first["resources"]["max_parallel_plans"] = 99

    assert DEFAULT_CONFIG["resources"]["max_parallel_plans"] == 2
    assert validate_config(default_config()).is_valid


def test_merge_is_deep() -> None:
    merged = merge_config({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})

    assert merged == {"a": {"b": 1, "c": 3}, "d": 4}


@pytest.mark.parametrize(
    ("overlay", "path", "fragment"),
    [
        ({"executor": {"backend": "lxc"}}, "executor.backend", "expected one of"),
        ({"executor": {"poll_interval_seconds": 0}}, "executor.poll_interval_seconds", "> 0"),
        ({"resources": {"fast_workers": 0}}, "resources.fast_workers", ""),
        ({"resources": {"memory_budget_mb": -1}}, "resources.memory_budget_mb", ""),
        ({"toolchains": {"gnu_image": "cross:latest"}}, "toolchains.gnu_image", "{arch}"),
        ({"toolchains": {"architectures": ["x86-64"]}}, "toolchains.architectures[0]", "invalid"),
        ({"toolchains": {"env": {"API_TOKEN": "x"}}}, "toolchains.env.API_TOKEN", "secret"),
        ({"toolchains": {"env": {"lower": "x"}}}, "toolchains.env.lower", "env var name"),
        ({"stages": {"timeouts": {"package": -5}}}, "stages.timeouts.package", "> 0"),
        ({"observability": {"log_level": "LOUD"}}, "observability.log_level", "expected one of"),
        ({"release": {"password": "hunter2"}}, "release.password", "secret"),
        ({"colour": {}}, "colour", "unknown field"),
        ({"meta": {"schema_version": 2}}, "meta.schema_version", "not supported"),
    ],
)
def test_invalid_values_are_reported_by_path(
    overlay: dict[str, object], path: str, fragment: str
) -> None:
    result = validate_config(_with(overlay))

    assert not result.is_valid
    matching = [issue for issue in result.issues if issue.path == path]
    assert matching, result.issues
    assert fragment in matching[0].message


def test_log_level_is_case_insensitive() -> None:
    config = assert_valid_config(_with({"observability": {"log_level": "debug"}}))

    assert config["observability"]["log_level"] == "DEBUG"


def test_missing_section_raises_validation_error() -> None:
    payload = default_config()
    del payload["release"]

    with pytest.raises(ConfigValidationError, match="release: missing required section"):
        assert_valid_config(payload)


def test_stage_overrides_are_free_form() -> None:
    config = assert_valid_config(
        _with({"stages": {"commands": {"package": "make deb"}, "timeouts": {"package": 60}}})
    )

    assert config["stages"] == {"commands": {"package": "make deb"}, "timeouts": {"package": 60.0}}


def test_redaction_masks_env_and_sensitive_keys() -> None:
    config = _with({"toolchains": {"env": {"CARGO_HOME": "/opt/cargo"}}})
    config["extra"] = {"auth_header": "Bearer x", "note": "kept"}

    redacted = redact_config(config)

    assert redacted["toolchains"]["env"] == {"CARGO_HOME": "***REDACTED***"}
    assert redacted["extra"] == {"auth_header": "***REDACTED***", "note": "kept"}
    assert config["toolchains"]["env"] == {"CARGO_HOME": "/opt/cargo"}
