"""Pipeline orchestration: plan scheduling, failure aggregation and run reports."""

from release_pipeline.control_plane.orchestrator import OrchestratorSettings, PipelineOrchestrator
from release_pipeline.control_plane.report import PipelineReport, PlanOutcome, StageRecord

__all__ = [
    "OrchestratorSettings",
    "PipelineOrchestrator",
    "PipelineReport",
    "PlanOutcome",
    "StageRecord",
]
