"""Output rendering for the release-pipeline CLI.

File: src/release_pipeline/ui/render.py

Purpose
- Provide a thin plain-text rendering layer for CLI output.
- Render the end-of-run summary: every plan's final state and, for failures, the
  failing stage, its reason and its log path.

Functional requirements
- Respect the NO_COLOR environment variable and the --no-color CLI flag.
- Output is deterministic so it can be diffed between runs.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from release_pipeline.control_plane.report import PipelineReport

_SUMMARY_HEADERS = ("PLAN", "STATE", "STAGE", "REASON", "LOG")


def _color_allowed(no_color_flag: bool) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer producing clean, deterministic plain text."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def ok(self, label: str) -> None:
        print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        print(f"  FAIL  {label}")

    def report(self, report: PipelineReport) -> None:
        """Print the end-of-run summary table plus hazard and publishing details."""

        self.heading(f"run {report.run_id}")
        self.table(_SUMMARY_HEADERS, report.summary_rows(), title="Summary:")
        if report.aborted:
            self.section("Aborted:")
            self.items([report.abort_reason or "artifact hazard"])

        failed_groups = [
            f"{outcome.plan_id}: {', '.join(outcome.failed_groups)}"
            for outcome in report.outcomes
            if outcome.failed_groups
        ]
        if failed_groups:
            self.section("Failed fan-out groups:")
            self.items(failed_groups)

        if self.verbose:
            for outcome in report.outcomes:
                if outcome.published:
                    self.section(f"Published ({outcome.plan_id}):")
                    self.items([path.as_posix() for path in outcome.published])
                if outcome.retained_scratch:
                    self.warning(f"scratch of {outcome.plan_id} retained for diagnostics")

        verdict = "succeeded" if report.succeeded else "failed"
        self.text(f"\n{len(report.outcomes)} plan(s), {len(report.failed_plans)} failed: {verdict}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
