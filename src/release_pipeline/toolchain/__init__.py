"""Toolchain resolution: channel flags and cross-compilation contexts."""

from release_pipeline.toolchain.flags import (
    DEFAULT_FLAG_MARKERS,
    NO_CHANNEL,
    derive_flags,
    feature_string,
)
from release_pipeline.toolchain.selector import (
    DEFAULT_ARCHITECTURES,
    ToolchainSelector,
    ToolchainSettings,
)

__all__ = [
    "DEFAULT_ARCHITECTURES",
    "DEFAULT_FLAG_MARKERS",
    "NO_CHANNEL",
    "ToolchainSelector",
    "ToolchainSettings",
    "derive_flags",
    "feature_string",
]
