"""Unit tests for the stage executor using the host ``sh`` backend."""

from __future__ import annotations

import os
import time
from pathlib import Path

import psutil
import pytest

from release_pipeline.domain.errors import StageTimeoutError
from release_pipeline.domain.models import (
    ArtifactRef,
    FailureReason,
    Stage,
    ToolchainKind,
)
from release_pipeline.sandbox import SandboxBackend, StageExecutor, log_path_for
from release_pipeline.sandbox.stage_executor import _container_name, _container_workdir
from release_pipeline.toolchain.selector import ToolchainSelector, ToolchainSettings


@pytest.fixture
def executor() -> StageExecutor:
    return StageExecutor(backend="none", kill_grace_seconds=0.5)


def test_successful_stage_writes_log_and_outputs(tmp_path: Path, executor: StageExecutor) -> None:
    stage = Stage(
        name="build-pkg",
        command="echo building {{ arch }}; printf pkg > pkg.bin",
        outputs=(ArtifactRef(name="pkg", producer="build-pkg", path="pkg.bin"),),
    )

    result = executor.run(
        stage, None, tmp_path, log_dir=tmp_path / "logs", variables={"arch": "x86_64"}
    )

    assert not result.failed
    assert result.exit_code == 0
    assert result.reason is None
    assert result.log_ref == tmp_path / "logs" / "build-pkg.attempt-1.log"
    log_text = result.log_ref.read_text(encoding="utf-8")
    assert log_text.startswith("$ echo building x86_64;")
    assert "building x86_64" in log_text.splitlines()[1]
    assert (tmp_path / "pkg.bin").read_text(encoding="utf-8") == "pkg"


def test_nonzero_exit_is_exit_code_failure(tmp_path: Path, executor: StageExecutor) -> None:
    result = executor.run(
        Stage(name="compile", command="echo boom >&2; exit 3"),
        None,
        tmp_path,
        log_dir=tmp_path,
        attempt=2,
    )

    assert result.failed
    assert result.reason is FailureReason.EXIT_CODE
    assert result.exit_code == 3
    assert result.log_ref.name == "compile.attempt-2.log"
    assert "boom" in result.log_ref.read_text(encoding="utf-8")


def test_exit_zero_with_missing_output_violates_contract(
    tmp_path: Path, executor: StageExecutor
) -> None:
    stage = Stage(
        name="build-pkg",
        command="true",
        outputs=(ArtifactRef(name="pkg", producer="build-pkg", path="pkg.bin"),),
    )

    result = executor.run(stage, None, tmp_path, log_dir=tmp_path / "logs")

    assert result.failed
    assert result.exit_code == 0
    assert result.reason is FailureReason.OUTPUT_CONTRACT
    assert result.missing_outputs == ("pkg",)
    assert "pkg" in result.detail
    assert "# output_contract" in result.log_ref.read_text(encoding="utf-8")


def test_timeout_kills_process_tree(tmp_path: Path, executor: StageExecutor) -> None:
    stage = Stage(name="hang", command="sleep 30 & sleep 30", timeout_seconds=0.3)

    started = time.monotonic()
    result = executor.run(stage, None, tmp_path, log_dir=tmp_path)

    assert time.monotonic() - started < 10
    assert result.failed
    assert result.timed_out
    assert result.exit_code is None
    assert isinstance(result.error(), StageTimeoutError)


def test_missing_workdir_is_launch_error(tmp_path: Path, executor: StageExecutor) -> None:
    stage = Stage(name="compile", command="true", workdir="core")

    result = executor.run(stage, None, tmp_path, log_dir=tmp_path / "logs")

    assert result.reason is FailureReason.LAUNCH_ERROR
    assert "does not exist" in result.detail


def test_stage_runs_in_its_workdir_with_toolchain_env(tmp_path: Path) -> None:
    (tmp_path / "core").mkdir()
    selector = ToolchainSelector(ToolchainSettings(registry_cache_root=tmp_path / "cache"))
    toolchain = selector.resolve("x86_64", {"dev"}, kind=ToolchainKind.MUSL)
    stage = Stage(
        name="compile",
        command='printf "%s %s %s" "$BUILD_TARGET" "$BUILD_FEATURES" "$EXTRA" > env.txt',
        workdir="core",
        env={"EXTRA": "yes"},
    )

    result = StageExecutor(backend=SandboxBackend.NONE).run(
        stage, toolchain, tmp_path, log_dir=tmp_path / "logs"
    )

    assert not result.failed
    assert (tmp_path / "core" / "env.txt").read_text(encoding="utf-8") == (
        "x86_64-unknown-linux-musl dev yes"
    )


def test_host_environment_is_not_inherited_by_default(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("RELEASE_PIPELINE_LEAK", "secret")
    stage = Stage(name="env", command='printf "%s" "${RELEASE_PIPELINE_LEAK:-unset}" > env.txt')

    StageExecutor().run(stage, None, tmp_path, log_dir=tmp_path)
    assert (tmp_path / "env.txt").read_text(encoding="utf-8") == "unset"

    (tmp_path / "env.txt").unlink()
    StageExecutor(inherit_host_env=True).run(stage, None, tmp_path, log_dir=tmp_path)
    assert (tmp_path / "env.txt").read_text(encoding="utf-8") == "secret"


def test_container_argv_mounts_workspace_and_registry(tmp_path: Path) -> None:
    selector = ToolchainSelector(ToolchainSettings(registry_cache_root=tmp_path / "cache"))
    toolchain = selector.resolve("aarch64", set())
    stage = Stage(name="compile", command="cargo build", workdir="core")
    executor = StageExecutor(backend="podman")

    argv = executor._container_argv(
        "cargo build",
        toolchain,
        "start9/rust-arm-cross:aarch64",
        tmp_path,
        _container_workdir(stage, toolchain),
        toolchain.env,
        name="run-1-aarch64-compile-1",
    )

    assert argv[:5] == ["podman", "run", "--rm", "--name", "run-1-aarch64-compile-1"]
    assert _pair(argv, "-v", f"{tmp_path.as_posix()}:/home/rust/src")
    assert _pair(argv, "-w", "/home/rust/src/core")
    assert _pair(argv, "-u", "root")
    assert argv[-4:] == ["start9/rust-arm-cross:aarch64", "sh", "-c", "cargo build"]
    assert _pair(argv, "-e", "ARCH=aarch64")


def _fake_docker(tmp_path: Path, *, rm_status: int) -> Path:
    """Install a ``docker`` client whose container outlives the client process."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "docker"
    script.write_text(
        "#!/bin/sh\n"
        "if [ \"$1\" = rm ]; then\n"
        f"  echo \"$*\" >> {tmp_path / 'calls'}\n"
        f"  kill \"$(cat {tmp_path / 'container.pid'})\"\n"
        f"  exit {rm_status}\n"
        "fi\n"
        f"( sleep 30 & echo $! > {tmp_path / 'container.pid'} ) &\n"
        "wait\n"
        "exec sleep 30\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return bin_dir


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.mark.parametrize(("rm_status", "removed"), [(0, True), (1, False)])
def test_timeout_removes_the_named_container(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, rm_status: int, removed: bool
) -> None:
    bin_dir = _fake_docker(tmp_path, rm_status=rm_status)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    toolchain = ToolchainSelector(ToolchainSettings()).resolve("x86_64")
    stage = Stage(name="compile", command="cargo build", timeout_seconds=0.5)
    executor = StageExecutor(backend="docker", kill_grace_seconds=0.5)

    result = executor.run(
        stage,
        toolchain,
        tmp_path,
        log_dir=tmp_path / "logs",
        container_name="run-1-x86_64-compile-1",
    )

    assert result.reason is FailureReason.TIMEOUT
    calls = (tmp_path / "calls").read_text(encoding="utf-8")
    assert calls == "rm --force run-1-x86_64-compile-1\n"
    assert ("could not be removed" in result.detail) is not removed
    pid = int((tmp_path / "container.pid").read_text(encoding="utf-8"))
    deadline = time.monotonic() + 5
    while not _gone(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert _gone(pid)


def test_container_names_are_sanitized() -> None:
    assert _container_name("run 1/x86_64:compile#1") == "run-1-x86_64-compile-1"
    assert _container_name("///") == "release-pipeline-stage"


def test_log_path_is_per_attempt(tmp_path: Path) -> None:
    assert log_path_for(tmp_path, "assemble", 3) == tmp_path / "assemble.attempt-3.log"


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported backend"):
        StageExecutor(backend="lxc")


def _pair(argv: list[str], flag: str, value: str) -> bool:
    return any(argv[i] == flag and argv[i + 1] == value for i in range(len(argv) - 1))
