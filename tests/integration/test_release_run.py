"""End-to-end ``release-pipeline run`` against the full platform matrix with host stages."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import structlog

from release_pipeline.main import ExitCode, cli_entrypoint
from release_pipeline.observability import shutdown_logging

pytestmark = pytest.mark.integration

_CONFIG = """
[paths]
workspace_root = "work"
artifact_root = "artifacts"
publish_dir = "dist"
log_dir = "logs"
registry_cache = "cache"
memory_scratch_root = "shm"

[executor]
poll_interval_seconds = 0.05

[resources]
max_parallel_plans = 3

[release]
version = "0.3.5"
tag = "v0.3.5"

[stages.commands]
compile-backend = "mkdir -p target/{{ target }}/release && printf 'backend {{ features }}' > target/{{ target }}/release/startbox"
compile-container-init = "mkdir -p target/{{ target }}/release && printf init > target/{{ target }}/release/embassy_container_init"
package = "mkdir -p dist && cat {{ inputs['backend@' ~ arch] }} > {{ outputs['package'] }} && echo ' {{ version }}' >> {{ outputs['package'] }}"
assemble-image = "mkdir -p results && cp {{ inputs['package'] }} results/{{ platform }}.squashfs && cp {{ inputs['package'] }} results/{{ platform }}.iso"
disk-image = "cp {{ inputs['squashfs'] }} {{ outputs['disk-image'] }}"
"""


@pytest.fixture(autouse=True)
def _reset_logging() -> None:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _write_config(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "pipeline.toml"
    path.write_text(_CONFIG + extra, encoding="utf-8")
    return path


def _report(stdout: str) -> dict[str, object]:
    payload = json.loads(stdout.strip().splitlines()[-1])
    assert payload["command"] == "run"
    report = payload["report"]
    assert isinstance(report, dict)
    return report


def test_full_matrix_run_publishes_every_platform(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _write_config(tmp_path)

    exit_code = cli_entrypoint(["run", "--config", str(config), "--channel", "dev", "--json"])

    report = _report(capsys.readouterr().out)
    assert exit_code == ExitCode.SUCCESS
    assert report["succeeded"] is True
    assert report["failed_plans"] == []

    dist = tmp_path / "dist"
    assert (dist / "x86_64" / "x86_64.iso").read_text(encoding="utf-8") == (
        "backend avahi-alias,dev 0.3.5\n"
    )
    assert (dist / "raspberrypi" / "raspberrypi.img").exists()
    assert not (dist / "raspberrypi" / "raspberrypi.iso").exists()
    manifest = json.loads((dist / "aarch64" / "manifest.json").read_text(encoding="utf-8"))
    assert sorted(manifest) == ["aarch64.deb", "aarch64.iso", "aarch64.squashfs"]

    run_id = str(report["run_id"])
    run_logs = tmp_path / "logs" / run_id
    assert json.loads((run_logs / "report.json").read_text(encoding="utf-8"))["report"] == report
    events = [
        json.loads(line)
        for line in (run_logs / "pipeline.jsonl").read_text(encoding="utf-8").splitlines()
    ]
    finished = [event for event in events if event["message"] == "pipeline_plan_finished"]
    assert len(finished) == 5
    assert (run_logs / "raspberrypi" / "disk-image.attempt-1.log").exists()
    assert not (tmp_path / "work" / run_id / "x86_64").exists()


def test_unsupported_architecture_fails_before_any_stage(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _write_config(tmp_path)
    matrix = tmp_path / "matrix.yaml"
    matrix.write_text(
        "platforms:\n"
        "  - name: good\n    architectures: [x86_64]\n"
        "  - name: bad\n    architectures: [riscv64]\n",
        encoding="utf-8",
    )

    exit_code = cli_entrypoint(["run", "--config", str(config), "--matrix", str(matrix)])

    captured = capsys.readouterr()
    assert exit_code == ExitCode.CONFIG_ERROR
    assert "unsupported architecture 'riscv64'" in captured.err
    assert list((tmp_path / "logs").glob("*/report.json")) == []


def test_stage_failure_fails_only_its_plan(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _write_config(tmp_path)
    text = config.read_text(encoding="utf-8").replace(
        "disk-image = \"cp", "disk-image = \"echo no space left >&2; exit 1; cp"
    )
    config.write_text(text, encoding="utf-8")

    exit_code = cli_entrypoint(["run", "--config", str(config), "--retain-diagnostics"])

    out = capsys.readouterr().out
    assert exit_code == ExitCode.PLAN_FAILED
    assert "raspberrypi" in out
    assert "disk-image" in out
    assert "exit_code" in out
    assert "5 plan(s), 1 failed: failed" in out
    assert (tmp_path / "dist" / "x86_64" / "x86_64.iso").exists()
    assert not (tmp_path / "dist" / "raspberrypi").exists()
