"""Stable constants shared across pipeline components."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
REPORT_SCHEMA_VERSION: Final[int] = 1

# Platform filter that selects every platform of the matrix.
ALL_PLATFORMS: Final[str] = "ALL"

# Written next to the run logs.
REPORT_FILENAME: Final[str] = "report.json"

__all__ = [
    "ALL_PLATFORMS",
    "CONFIG_SCHEMA_VERSION",
    "REPORT_FILENAME",
    "REPORT_SCHEMA_VERSION",
]
