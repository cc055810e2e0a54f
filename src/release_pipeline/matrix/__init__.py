"""Platform matrix definition and expansion into build plans."""

from release_pipeline.matrix.definition import (
    DEFAULT_CONTAINER_INIT_ARCHITECTURES,
    DEFAULT_MATRIX,
    DEFAULT_STANDARD_RUNNER,
    MatrixDefinition,
    PlatformEntry,
    load_matrix_definition,
    parse_matrix_definition,
)
from release_pipeline.matrix.expander import ALL_PLATFORMS, RunnerWorkers, expand

__all__ = [
    "ALL_PLATFORMS",
    "DEFAULT_CONTAINER_INIT_ARCHITECTURES",
    "DEFAULT_MATRIX",
    "DEFAULT_STANDARD_RUNNER",
    "MatrixDefinition",
    "PlatformEntry",
    "RunnerWorkers",
    "expand",
    "load_matrix_definition",
    "parse_matrix_definition",
]
