"""Command-line interface router for release-pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import shutil
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import psutil

from release_pipeline.artifacts import RegistryCache
from release_pipeline.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from release_pipeline.constants import ALL_PLATFORMS, REPORT_FILENAME, REPORT_SCHEMA_VERSION
from release_pipeline.control_plane import OrchestratorSettings, PipelineOrchestrator
from release_pipeline.control_plane.report import PipelineReport
from release_pipeline.domain.errors import ConfigurationError
from release_pipeline.domain.models import BuildPlan, RunnerHint, ToolchainKind
from release_pipeline.main import ExitCode
from release_pipeline.matrix import (
    DEFAULT_MATRIX,
    MatrixDefinition,
    RunnerWorkers,
    expand,
    load_matrix_definition,
)
from release_pipeline.observability import setup_logging, shutdown_logging
from release_pipeline.planning import ReleaseStageSettings, StageGraph, build_release_stages
from release_pipeline.sandbox import StageExecutor
from release_pipeline.toolchain import (
    ToolchainSelector,
    ToolchainSettings,
    derive_flags,
    feature_string,
)
from release_pipeline.ui.render import CLIRenderer, create_renderer
from release_pipeline.utils.fs import atomic_write

_BYTES_PER_MIB: Final[int] = 1024 * 1024


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.CONFIG_ERROR)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="release-pipeline",
        description=(
            "release-pipeline — multi-architecture release build and image assembly.\n\n"
            "Common workflows:\n"
            "  release-pipeline expand --platform ALL     Show the build plans\n"
            "  release-pipeline plan --platform x86_64    Show one plan's stage DAG\n"
            "  release-pipeline run --channel dev         Build every platform\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to pipeline TOML config (default: ./pipeline.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    matrix_args = argparse.ArgumentParser(add_help=False)
    matrix_args.add_argument(
        "--matrix",
        default=None,
        help="Platform matrix YAML file (default: paths.matrix or the built-in matrix).",
    )
    matrix_args.add_argument(
        "--platform",
        default=ALL_PLATFORMS,
        help=f"'{ALL_PLATFORMS}' or a single platform name (default: {ALL_PLATFORMS}).",
    )
    matrix_args.add_argument(
        "--runner",
        choices=[hint.value for hint in RunnerHint],
        default=RunnerHint.STANDARD.value,
        help="Runner hint (default: standard).",
    )
    matrix_args.add_argument(
        "--channel",
        default=None,
        help="Release channel string, e.g. 'dev-unstable' (default: release.channel).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # flags ----------------------------------------------------------------
    flags_parser = subparsers.add_parser(
        "flags",
        parents=[common],
        help="Derive feature flags from a release channel string",
    )
    flags_parser.add_argument("channel", help="Release channel string ('NONE' for none).")
    flags_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    flags_parser.set_defaults(handler=_cmd_flags)

    # resolve --------------------------------------------------------------
    resolve_parser = subparsers.add_parser(
        "resolve",
        parents=[common],
        help="Resolve the toolchain an architecture builds with",
    )
    resolve_parser.add_argument("architecture", help="Target architecture, e.g. aarch64.")
    resolve_parser.add_argument(
        "--kind",
        choices=[kind.value for kind in ToolchainKind],
        default=ToolchainKind.GNU.value,
        help="Toolchain kind (default: gnu).",
    )
    resolve_parser.add_argument("--channel", default=None, help="Release channel string.")
    resolve_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    resolve_parser.set_defaults(handler=_cmd_resolve)

    # expand ---------------------------------------------------------------
    expand_parser = subparsers.add_parser(
        "expand",
        parents=[common, matrix_args],
        help="Expand the platform matrix into build plans",
    )
    expand_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    expand_parser.set_defaults(handler=_cmd_expand)

    # plan -----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common, matrix_args],
        help="Compile and show the stage DAG of each build plan without running it",
    )
    plan_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    plan_parser.set_defaults(handler=_cmd_plan)

    # run ------------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common, matrix_args],
        help="Build, package and assemble images for the selected platforms",
        description=(
            "Run every selected build plan. Plans fail independently; succeeded plans "
            "publish their artifacts.\n\n"
            "Exit codes: 0 success, 1 a plan failed, 2 configuration error,\n"
            "3 artifact hazard abort, 4 internal error."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "--backend",
        choices=["none", "docker", "podman"],
        default=None,
        help="Sandbox backend for stage commands (default: executor.backend).",
    )
    run_parser.add_argument(
        "--max-parallel-plans",
        type=int,
        default=None,
        help="Plans executing at once (default: resources.max_parallel_plans).",
    )
    run_parser.add_argument(
        "--retain-diagnostics",
        action="store_true",
        default=False,
        help="Keep scratch artifacts of failed plans.",
    )
    run_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    run_parser.set_defaults(handler=_cmd_run)

    # config ---------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective configuration (redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)

    # doctor ---------------------------------------------------------------
    doctor_parser = subparsers.add_parser(
        "doctor",
        parents=[common],
        help="Check configuration, sandbox backend and host resources",
    )
    doctor_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    doctor_parser.set_defaults(handler=_cmd_doctor)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_flags(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    flags = derive_flags(args.channel, config["release"]["flag_markers"])
    features = feature_string(config["toolchains"]["gnu_base_features"], flags)
    payload: dict[str, object] = {
        "command": "flags",
        "channel": args.channel,
        "flags": sorted(flags),
        "features": features,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Flags", ", ".join(sorted(flags)) or "(none)")
    renderer.kv("Backend features", features)
    return 0


def _cmd_resolve(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    flags = derive_flags(_channel(args, config), config["release"]["flag_markers"])
    selector = ToolchainSelector(ToolchainSettings.from_config(config))
    try:
        spec = selector.resolve(args.architecture, flags, kind=args.kind)
    except ConfigurationError as exc:
        raise CLIError(str(exc)) from exc

    if _flag(args, "json"):
        _emit_json({"command": "resolve", "toolchain": spec.to_dict()})
        return 0

    renderer = _get_renderer(args)
    for key, value in spec.to_dict().items():
        if isinstance(value, (list, dict)):
            value = json.dumps(value, sort_keys=True)
        renderer.kv(key, value if value is not None else "-")
    return 0


def _cmd_expand(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    plans = _expand_plans(args, config)

    if _flag(args, "json"):
        _emit_json({"command": "expand", "plans": [plan.to_dict() for plan in plans]})
        return 0

    renderer = _get_renderer(args)
    rows = [
        (
            plan.platform,
            plan.architecture,
            plan.runner.label,
            str(plan.runner.max_workers),
            _yes_no(plan.runner.memory_scratch),
            _yes_no(plan.runner.image_memory_scratch),
            ",".join(sorted(plan.feature_flags)) or "-",
        )
        for plan in plans
    ]
    renderer.table(
        ("PLATFORM", "ARCH", "RUNNER", "WORKERS", "MEM-SCRATCH", "IMAGE-SCRATCH", "FLAGS"),
        rows,
        title=f"{len(plans)} build plan(s):",
    )
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    plans = _expand_plans(args, config)
    selector = ToolchainSelector(ToolchainSettings.from_config(config))
    try:
        stage_settings = ReleaseStageSettings.from_config(config)
        compiled = {
            plan.plan_id: StageGraph.from_stages(
                build_release_stages(plan, selector, stage_settings)
            )
            for plan in plans
        }
    except ConfigurationError as exc:
        raise CLIError(str(exc)) from exc

    payload_plans: list[dict[str, object]] = []
    for plan in plans:
        graph = compiled[plan.plan_id]
        payload_plans.append(
            {
                "plan_id": plan.plan_id,
                "order": list(graph.order),
                "stages": [
                    {
                        "name": stage.name,
                        "toolchain": stage.toolchain.kind.value if stage.toolchain else None,
                        "inputs": [ref.key for ref in stage.inputs],
                        "outputs": [ref.key for ref in stage.outputs],
                        "depends_on": list(graph.get_dependencies(stage.name)),
                    }
                    for stage in graph.stages
                ],
            }
        )
    if _flag(args, "json"):
        _emit_json({"command": "plan", "plans": payload_plans})
        return 0

    renderer = _get_renderer(args)
    for plan in plans:
        graph = compiled[plan.plan_id]
        rows = [
            (
                stage.name,
                stage.toolchain.kind.value if stage.toolchain is not None else "-",
                ", ".join(graph.get_dependencies(stage.name)) or "-",
                ", ".join(ref.key for ref in stage.outputs) or "-",
            )
            for stage in graph.stages
        ]
        renderer.table(
            ("STAGE", "TOOLCHAIN", "DEPENDS ON", "OUTPUTS"), rows, title=f"{plan.plan_id}:"
        )
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {}
    if args.backend is not None:
        overrides["executor.backend"] = args.backend
    if args.max_parallel_plans is not None:
        overrides["resources.max_parallel_plans"] = args.max_parallel_plans
    if args.retain_diagnostics:
        overrides["artifacts.retain_diagnostics"] = True
    config = _load_effective_config(args, overrides)
    plans = _expand_plans(args, config)

    executor_section = config["executor"]
    orchestrator = PipelineOrchestrator(
        OrchestratorSettings.from_config(config),
        executor=StageExecutor(
            backend=executor_section["backend"],
            inherit_host_env=executor_section["inherit_host_env"],
            kill_grace_seconds=executor_section["kill_grace_seconds"],
        ),
        selector=ToolchainSelector(ToolchainSettings.from_config(config)),
        stage_settings=ReleaseStageSettings.from_config(config),
        registry_cache=RegistryCache(config["paths"]["registry_cache"]),
    )
    log_root = orchestrator.settings.log_dir
    handle = setup_logging(config["observability"], run_id=orchestrator.run_id, log_dir=log_root)
    try:
        report = asyncio.run(orchestrator.run(plans))
    finally:
        shutdown_logging(handle)

    payload: dict[str, object] = {
        "command": "run",
        "schema_version": REPORT_SCHEMA_VERSION,
        "report": report.to_dict(),
    }
    report_path = log_root / orchestrator.run_id / REPORT_FILENAME
    atomic_write(report_path, json.dumps(payload, sort_keys=True, indent=2) + "\n")

    if _flag(args, "json"):
        _emit_json(payload)
    else:
        renderer = _get_renderer(args)
        renderer.report(report)
        renderer.kv("Report", report_path.as_posix())
    return int(_exit_code_for(report))


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _get_renderer(args).text(dump_effective_config(config))
    return 0


def _cmd_doctor(args: argparse.Namespace) -> int:
    checks: list[tuple[str, bool, str]] = []

    config: dict[str, Any] | None = None
    try:
        config = _load_effective_config(args)
        checks.append(("config", True, "loaded successfully"))
    except CLIError as exc:
        checks.append(("config", False, str(exc)))

    if config is not None:
        backend = config["executor"]["backend"]
        if backend == "none":
            checks.append(("backend", True, "stages run directly on the host"))
        else:
            binary = shutil.which(backend)
            if binary is not None:
                checks.append(("backend", True, f"{backend} found at {binary}"))
            else:
                checks.append(("backend", False, f"{backend} not found in PATH"))

        budget = _memory_budget_bytes(config)
        checks.append(("memory", True, f"{budget // _BYTES_PER_MIB} MiB available for scratch"))

        try:
            definition = _load_matrix(config)
            names = ", ".join(definition.platform_names)
            checks.append(("matrix", True, f"{len(definition.platforms)} platform(s): {names}"))
        except ConfigurationError as exc:
            checks.append(("matrix", False, str(exc)))
    else:
        checks.append(("backend", False, "skipped (config failed)"))

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "doctor",
                "checks": [
                    {"name": name, "status": "ok" if passed else "fail", "detail": detail}
                    for name, passed, detail in checks
                ],
            }
        )
    else:
        renderer = _get_renderer(args)
        renderer.heading("release-pipeline doctor")
        for name, passed, detail in checks:
            if passed:
                renderer.ok(f"{name}: {detail}")
            else:
                renderer.fail(f"{name}: {detail}")

    if all(passed for _, passed, _ in checks):
        return 0
    return int(ExitCode.CONFIG_ERROR)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> dict[str, Any]:
    cli_overrides: dict[str, object] = dict(overrides or {})
    channel = getattr(args, "channel", None)
    if isinstance(channel, str):
        cli_overrides["release.channel"] = channel
    matrix = getattr(args, "matrix", None)
    if isinstance(matrix, str) and matrix.strip():
        # CLI paths are relative to the working directory, not the config file.
        cli_overrides["paths.matrix"] = Path(matrix).expanduser().resolve().as_posix()

    try:
        return load_config(getattr(args, "config_path", None), cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc


def _channel(args: argparse.Namespace, config: Mapping[str, Any]) -> str:
    channel = getattr(args, "channel", None)
    if isinstance(channel, str):
        return channel
    return str(config["release"]["channel"])


def _load_matrix(config: Mapping[str, Any]) -> MatrixDefinition:
    matrix_path = config["paths"].get("matrix")
    if not matrix_path:
        return DEFAULT_MATRIX
    return load_matrix_definition(matrix_path)


def _expand_plans(args: argparse.Namespace, config: Mapping[str, Any]) -> tuple[BuildPlan, ...]:
    resources = config["resources"]
    try:
        definition = _load_matrix(config)
        return expand(
            definition,
            args.platform,
            runner_hint=args.runner,
            feature_flags=derive_flags(_channel(args, config), config["release"]["flag_markers"]),
            workers=RunnerWorkers(
                standard=resources["standard_workers"],
                fast=resources["fast_workers"],
                fast_dedicated=resources["fast_dedicated_workers"],
            ),
            memory_budget_bytes=_memory_budget_bytes(config),
        )
    except ConfigurationError as exc:
        raise CLIError(str(exc)) from exc


def _memory_budget_bytes(config: Mapping[str, Any]) -> int:
    configured = int(config["resources"]["memory_budget_mb"])
    if configured > 0:
        return configured * _BYTES_PER_MIB
    return int(psutil.virtual_memory().total)


def _exit_code_for(report: PipelineReport) -> ExitCode:
    if report.aborted:
        return ExitCode.ARTIFACT_HAZARD
    if not report.succeeded:
        return ExitCode.PLAN_FAILED
    return ExitCode.SUCCESS


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
