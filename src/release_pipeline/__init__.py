"""
release-pipeline

File: src/release_pipeline/__init__.py

Purpose
- Package root for the multi-architecture release build and image assembly pipeline:
  platform matrix expansion, toolchain selection, sandboxed stage execution,
  write-once artifact storage and concurrent plan orchestration.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
