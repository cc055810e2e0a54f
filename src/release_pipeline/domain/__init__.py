"""Domain models and error taxonomy for the release pipeline."""

from release_pipeline.domain.errors import (
    ArtifactHazardError,
    ArtifactMissingError,
    ConfigurationError,
    MatrixDefinitionError,
    PipelineError,
    StageExecutionError,
    StageGraphError,
    StageTemplateError,
    StageTimeoutError,
    UnsupportedArchitectureError,
)
from release_pipeline.domain.models import (
    ArtifactRef,
    BuildPlan,
    ExecutionResult,
    FailureReason,
    Mount,
    PlanState,
    RunnerAssignment,
    RunnerHint,
    Stage,
    StageState,
    ToolchainKind,
    ToolchainRequirement,
    ToolchainSpec,
)

__all__ = [
    "ArtifactHazardError",
    "ArtifactMissingError",
    "ArtifactRef",
    "BuildPlan",
    "ConfigurationError",
    "ExecutionResult",
    "FailureReason",
    "MatrixDefinitionError",
    "Mount",
    "PipelineError",
    "PlanState",
    "RunnerAssignment",
    "RunnerHint",
    "Stage",
    "StageExecutionError",
    "StageGraphError",
    "StageState",
    "StageTemplateError",
    "StageTimeoutError",
    "ToolchainKind",
    "ToolchainRequirement",
    "ToolchainSpec",
    "UnsupportedArchitectureError",
]
