"""UI package exports for the CLI and its plain-text rendering."""

from release_pipeline.ui.cli import CLIError, build_parser, run_cli
from release_pipeline.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
