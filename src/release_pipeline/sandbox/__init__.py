"""Stage execution: command templates, subprocess/container launch and teardown."""

from release_pipeline.sandbox.command_template import (
    STAGE_VARIABLES,
    render_command,
    template_variables,
    validate_template,
)
from release_pipeline.sandbox.process import kill_process_tree
from release_pipeline.sandbox.stage_executor import (
    SandboxBackend,
    StageExecutor,
    log_path_for,
    stage_directory,
)

__all__ = [
    "STAGE_VARIABLES",
    "SandboxBackend",
    "StageExecutor",
    "kill_process_tree",
    "log_path_for",
    "render_command",
    "stage_directory",
    "template_variables",
    "validate_template",
]
