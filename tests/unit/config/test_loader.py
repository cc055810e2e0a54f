"""
release-pipeline — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from release_pipeline.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from release_pipeline.domain.errors import ConfigurationError


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_load_without_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["executor"]["backend"] == "none"
    assert config["resources"]["max_parallel_plans"] == 2
    assert config["release"]["flag_markers"] == ["dev", "unstable"]
    assert config["paths"]["workspace_root"] == (tmp_path.resolve() / "workspaces").as_posix()
    assert "source_dir" not in config["paths"]


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "ci" / "pipeline.toml",
        """
[resources]
max_parallel_plans = 3
standard_workers = 5

[release]
channel = "dev"
version = "0.3.5"
""",
    )
    environ = {
        "RELEASE_PIPELINE_RESOURCES_MAX_PARALLEL_PLANS": "4",
        "RELEASE_PIPELINE_RELEASE_CHANNEL": "dev-unstable",
        "RELEASE_PIPELINE_EXECUTOR_INHERIT_HOST_ENV": "yes",
        "RELEASE_PIPELINE_EXECUTOR_POLL_INTERVAL_SECONDS": "0.25",
    }

    config = load_config(
        config_path,
        environ=environ,
        cli_overrides={"resources.max_parallel_plans": 6},
    )

    assert config["resources"]["max_parallel_plans"] == 6
    assert config["resources"]["standard_workers"] == 5
    assert config["release"]["channel"] == "dev-unstable"
    assert config["release"]["version"] == "0.3.5"
    assert config["executor"]["inherit_host_env"] is True
    assert config["executor"]["poll_interval_seconds"] == 0.25


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "ci" / "pipeline.toml",
        """
[paths]
source_dir = "../checkout"
publish_dir = "/srv/releases"
""",
    )

    config = load_config(config_path, environ={})

    assert config["paths"]["source_dir"] == (tmp_path.resolve() / "checkout").as_posix()
    assert config["paths"]["publish_dir"] == "/srv/releases"
    assert config["paths"]["log_dir"] == (tmp_path.resolve() / "ci" / "logs").as_posix()


def test_optional_paths_bind_to_env(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "pipeline.toml", "")

    config = load_config(config_path, environ={"RELEASE_PIPELINE_PATHS_MATRIX": "matrix.yaml"})

    assert config["paths"]["matrix"] == (tmp_path.resolve() / "matrix.yaml").as_posix()


@pytest.mark.parametrize(
    ("name", "value", "fragment"),
    [
        ("RELEASE_PIPELINE_RESOURCES_FAST_WORKERS", "many", "must be an integer"),
        ("RELEASE_PIPELINE_EXECUTOR_KILL_GRACE_SECONDS", "soon", "must be a number"),
        ("RELEASE_PIPELINE_ARTIFACTS_RETAIN_DIAGNOSTICS", "maybe", "must be a boolean"),
    ],
)
def test_bad_env_values_are_rejected(
    tmp_path: Path, name: str, value: str, fragment: str
) -> None:
    config_path = _write_config(tmp_path / "pipeline.toml", "")

    with pytest.raises(ConfigLoadError, match=fragment):
        load_config(config_path, environ={name: value})


def test_explicit_missing_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "pipeline.toml", "[resources\n")

    with pytest.raises(ConfigurationError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_invalid_values_report_every_issue(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "pipeline.toml",
        """
[executor]
backend = "lxc"

[resources]
max_parallel_plans = 0
""",
    )

    with pytest.raises(ConfigValidationError) as exc_info:
        load_config(config_path, environ={})

    paths = [issue.path for issue in exc_info.value.issues]
    assert paths == ["executor.backend", "resources.max_parallel_plans"]


def test_dump_is_deterministic_and_redacts_env(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "pipeline.toml",
        """
[toolchains.env]
CARGO_HOME = "/opt/cargo"
""",
    )

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    payload = json.loads(first)
    assert payload["toolchains"]["env"] == {"CARGO_HOME": "***REDACTED***"}
    assert "/opt/cargo" not in first
