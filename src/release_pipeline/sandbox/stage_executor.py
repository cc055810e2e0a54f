"""
release-pipeline — stage executor.

File: src/release_pipeline/sandbox/stage_executor.py

Purpose
- Run one stage command as a subprocess, directly or inside its toolchain container.
- Capture combined stdout/stderr to a per-attempt log file.

Functional requirements
- Wall-clock timeout kills the entire process tree and records ``timeout``. Containerized
  stages run under a known name so the container itself is removed on timeout.
- Exit 0 with a declared output missing is coerced to ``output_contract``.
- No retries here; the working directory is always explicit.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Final

from release_pipeline.domain.models import ExecutionResult, FailureReason
from release_pipeline.sandbox.command_template import render_command
from release_pipeline.sandbox.process import kill_process_tree

if TYPE_CHECKING:
    from collections.abc import Mapping

    from release_pipeline.domain.models import Stage, ToolchainSpec

logger = logging.getLogger(__name__)

_CONTAINER_REMOVE_TIMEOUT_SECONDS: Final[float] = 60.0
_CONTAINER_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


class SandboxBackend(str, Enum):
    """Backend names accepted by :class:`StageExecutor`."""

    NONE = "none"
    DOCKER = "docker"
    PODMAN = "podman"


def stage_directory(stage: Stage, workdir: Path | str) -> Path:
    """Host directory a stage runs in and resolves its output paths against."""

    base = Path(workdir)
    return base if stage.workdir == "." else base / stage.workdir


def log_path_for(log_dir: Path | str, stage: str, attempt: int) -> Path:
    return Path(log_dir) / f"{stage}.attempt-{attempt}.log"


class StageExecutor:
    """Execute stages under a unified backend API.

    The ``none`` backend runs the rendered command with ``sh -c`` on the host, applying
    the toolchain environment but not its mounts. ``docker`` and ``podman`` run it in
    the toolchain image with the stage workdir mounted at the toolchain source mount.
    """

    def __init__(
        self,
        *,
        backend: SandboxBackend | str = SandboxBackend.NONE,
        env_overrides: Mapping[str, str] | None = None,
        inherit_host_env: bool = False,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        if kill_grace_seconds < 0:
            raise ValueError("kill_grace_seconds must be >= 0")
        self._backend = _coerce_backend(backend)
        self._env_overrides = dict(env_overrides or {})
        self._inherit_host_env = bool(inherit_host_env)
        self._kill_grace_seconds = float(kill_grace_seconds)

    @property
    def backend(self) -> SandboxBackend:
        return self._backend

    def run(
        self,
        stage: Stage,
        toolchain: ToolchainSpec | None,
        workdir: Path | str,
        *,
        log_dir: Path | str,
        variables: Mapping[str, object] | None = None,
        attempt: int = 1,
        container_name: str | None = None,
    ) -> ExecutionResult:
        """Run one attempt of ``stage`` and return its result; never raises for stage failures.

        ``container_name`` names the container of a containerized run; a unique name is
        generated when it is omitted.
        """

        base = Path(workdir).resolve()
        directory = stage_directory(stage, base)
        image = self._container_image(toolchain)
        container_dir = _container_workdir(stage, toolchain) if image is not None else None

        payload: dict[str, object] = {"stage": stage.name}
        payload.update(variables or {})
        payload["workdir"] = container_dir if container_dir is not None else directory.as_posix()
        command = render_command(stage.name, stage.command, payload)

        log_ref = log_path_for(log_dir, stage.name, attempt)
        log_ref.parent.mkdir(parents=True, exist_ok=True)

        stage_env: dict[str, str] = dict(toolchain.env) if toolchain is not None else {}
        stage_env.update(stage.env)
        name: str | None = None
        if toolchain is not None and image is not None:
            name = _container_name(
                container_name or f"release-pipeline-{stage.name}-{attempt}-{uuid.uuid4().hex[:8]}"
            )
            argv = self._container_argv(
                command, toolchain, image, base, container_dir, stage_env, name=name
            )
            process_env = self._build_environment({})
        else:
            argv = ["sh", "-c", command]
            process_env = self._build_environment(stage_env)

        started = time.perf_counter()
        with log_ref.open("wb") as log_handle:
            log_handle.write(f"$ {command}\n".encode())
            log_handle.flush()
            if not directory.is_dir():
                return self._finish(
                    stage,
                    attempt,
                    log_ref,
                    started,
                    exit_code=None,
                    reason=FailureReason.LAUNCH_ERROR,
                    detail=f"working directory {directory} does not exist",
                    log_handle=log_handle,
                )
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=directory,
                    env=process_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                return self._finish(
                    stage,
                    attempt,
                    log_ref,
                    started,
                    exit_code=None,
                    reason=FailureReason.LAUNCH_ERROR,
                    detail=f"unable to launch {argv[0]!r}: {exc}",
                    log_handle=log_handle,
                )

            try:
                exit_code = process.wait(timeout=stage.timeout_seconds)
            except subprocess.TimeoutExpired:
                kill_process_tree(process.pid, grace_seconds=self._kill_grace_seconds)
                process.wait()
                detail = f"exceeded {stage.timeout_seconds:g}s wall-clock timeout"
                # The runtime daemon owns the container, not the client we just killed.
                if name is not None and not self._remove_container(name, log_handle):
                    detail += f"; container {name} could not be removed"
                return self._finish(
                    stage,
                    attempt,
                    log_ref,
                    started,
                    exit_code=None,
                    reason=FailureReason.TIMEOUT,
                    detail=detail,
                    log_handle=log_handle,
                )

        if exit_code != 0:
            return self._finish(
                stage,
                attempt,
                log_ref,
                started,
                exit_code=exit_code,
                reason=FailureReason.EXIT_CODE,
                detail=f"exited with status {exit_code}",
            )

        missing = tuple(
            ref.key for ref in stage.outputs if not (directory / ref.path).exists()
        )
        if missing:
            return self._finish(
                stage,
                attempt,
                log_ref,
                started,
                exit_code=exit_code,
                reason=FailureReason.OUTPUT_CONTRACT,
                detail=f"declared outputs missing: {', '.join(missing)}",
                missing_outputs=missing,
            )
        return self._finish(stage, attempt, log_ref, started, exit_code=exit_code)

    def _container_image(self, toolchain: ToolchainSpec | None) -> str | None:
        if self._backend is SandboxBackend.NONE or toolchain is None:
            return None
        return toolchain.image

    def _container_argv(
        self,
        command: str,
        toolchain: ToolchainSpec,
        image: str,
        base: Path,
        container_dir: str | None,
        env: Mapping[str, str],
        *,
        name: str,
    ) -> list[str]:
        argv = [self._backend.value, "run", "--rm", "--name", name]
        for key in sorted(env):
            argv.extend(["-e", f"{key}={env[key]}"])
        if toolchain.source_mount:
            argv.extend(["-v", f"{base.as_posix()}:{toolchain.source_mount}"])
        for mount in toolchain.mounts:
            argv.extend(["-v", mount.as_volume()])
        if container_dir is not None:
            argv.extend(["-w", container_dir])
        if toolchain.user:
            argv.extend(["-u", toolchain.user])
        argv.extend([image, "sh", "-c", command])
        return argv

    def _remove_container(self, name: str, log_handle: BinaryIO) -> bool:
        argv = [self._backend.value, "rm", "--force", name]
        log_handle.write(f"\n$ {' '.join(argv)}\n".encode())
        log_handle.flush()
        try:
            completed = subprocess.run(
                argv,
                env=self._build_environment({}),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                timeout=_CONTAINER_REMOVE_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning(
                "container removal failed", extra={"container": name, "error": str(exc)}
            )
            return False
        if completed.returncode != 0:
            logger.warning(
                "container removal failed",
                extra={"container": name, "exit_code": completed.returncode},
            )
            return False
        return True

    def _build_environment(self, env: Mapping[str, str]) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {}
            host_path = os.environ.get("PATH")
            if host_path:
                merged["PATH"] = host_path
        merged.update(self._env_overrides)
        merged.update(env)
        return merged

    def _finish(
        self,
        stage: Stage,
        attempt: int,
        log_ref: Path,
        started: float,
        *,
        exit_code: int | None,
        reason: FailureReason | None = None,
        detail: str = "",
        missing_outputs: tuple[str, ...] = (),
        log_handle: BinaryIO | None = None,
    ) -> ExecutionResult:
        duration_ms = (time.perf_counter() - started) * 1000.0
        if reason is not None:
            note = f"\n# {reason.value}: {detail}\n".encode()
            if log_handle is not None:
                log_handle.write(note)
            else:
                with log_ref.open("ab") as handle:
                    handle.write(note)
        result = ExecutionResult(
            stage=stage.name,
            attempt=attempt,
            exit_code=exit_code,
            duration_ms=duration_ms,
            log_ref=log_ref,
            failed=reason is not None,
            reason=reason,
            detail=detail,
            missing_outputs=missing_outputs,
        )
        logger.info(
            "stage attempt finished",
            extra={
                "stage": stage.name,
                "attempt": attempt,
                "exit_code": exit_code,
                "reason": reason.value if reason is not None else None,
                "duration_ms": round(duration_ms, 3),
                "log_ref": log_ref,
            },
        )
        return result


def _container_workdir(stage: Stage, toolchain: ToolchainSpec | None) -> str | None:
    if toolchain is None or not toolchain.source_mount:
        return None
    root = toolchain.source_mount.rstrip("/") or "/"
    if stage.workdir == ".":
        return root
    return f"{root.rstrip('/')}/{stage.workdir}"


def _container_name(raw: str) -> str:
    return _CONTAINER_NAME_UNSAFE.sub("-", raw).strip("-_.") or "release-pipeline-stage"


def _coerce_backend(value: SandboxBackend | str) -> SandboxBackend:
    if isinstance(value, SandboxBackend):
        return value
    if not isinstance(value, str):
        raise ValueError("backend must be a string or SandboxBackend")
    normalized = value.strip().lower()
    try:
        return SandboxBackend(normalized)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in SandboxBackend)
        raise ValueError(f"unsupported backend {value!r}; expected one of: {allowed}") from exc


__all__ = ["SandboxBackend", "StageExecutor", "log_path_for", "stage_directory"]
