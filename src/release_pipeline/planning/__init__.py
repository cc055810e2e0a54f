"""Stage DAG compilation for build plans."""

from release_pipeline.planning.release_stages import (
    ASSEMBLE_IMAGE,
    COMPILE_BACKEND,
    COMPILE_CONTAINER_INIT,
    CONTAINER_INIT_GROUP,
    DISK_IMAGE,
    PACKAGE,
    STAGE_KINDS,
    ReleaseStageSettings,
    build_release_stages,
)
from release_pipeline.planning.stage_graph import CycleError, StageGraph

__all__ = [
    "ASSEMBLE_IMAGE",
    "COMPILE_BACKEND",
    "COMPILE_CONTAINER_INIT",
    "CONTAINER_INIT_GROUP",
    "DISK_IMAGE",
    "PACKAGE",
    "STAGE_KINDS",
    "CycleError",
    "ReleaseStageSettings",
    "StageGraph",
    "build_release_stages",
]
