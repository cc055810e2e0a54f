"""Error taxonomy shared by every pipeline component.

Configuration-class errors abort a run before any stage executes. Stage execution
errors are recovered locally by skipping dependents. Artifact hazards are fatal to the
owning plan and stop the run from launching further stages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from release_pipeline.domain.models import ExecutionResult, FailureReason


class PipelineError(RuntimeError):
    """Base error for release pipeline failures."""


class ConfigurationError(PipelineError):
    """Raised for fatal, pre-execution configuration problems."""


class MatrixDefinitionError(ConfigurationError):
    """Raised when a matrix definition or platform filter is malformed."""


class UnsupportedArchitectureError(ConfigurationError):
    """Raised when no toolchain can be resolved for an architecture."""

    def __init__(self, architecture: str, supported: tuple[str, ...]) -> None:
        self.architecture = architecture
        self.supported = supported
        allowed = ", ".join(supported) or "<none>"
        super().__init__(f"unsupported architecture {architecture!r}; expected one of: {allowed}")


class StageGraphError(ConfigurationError):
    """Raised when stages do not form a valid write-once DAG."""


class StageTemplateError(ConfigurationError):
    """Raised when a stage command template cannot be rendered."""


class StageExecutionError(PipelineError):
    """A stage attempt failed: non-zero exit, missing output or launch failure."""

    def __init__(self, stage: str, reason: FailureReason, result: ExecutionResult) -> None:
        self.stage = stage
        self.reason = reason
        self.result = result
        detail = f": {result.detail}" if result.detail else ""
        super().__init__(f"stage {stage!r} failed ({reason.value}){detail}")


class StageTimeoutError(StageExecutionError):
    """A stage attempt exceeded its wall-clock timeout."""


class ArtifactHazardError(PipelineError):
    """Raised for write-once violations and failed ownership handoffs."""


class ArtifactMissingError(ArtifactHazardError):
    """Raised when reading an artifact that was never stored."""


__all__ = [
    "ArtifactHazardError",
    "ArtifactMissingError",
    "ConfigurationError",
    "MatrixDefinitionError",
    "PipelineError",
    "StageExecutionError",
    "StageGraphError",
    "StageTemplateError",
    "StageTimeoutError",
    "UnsupportedArchitectureError",
]
