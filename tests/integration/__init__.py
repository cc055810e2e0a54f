"""
release-pipeline — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker file for CLI and end-to-end run contracts.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Must not require a container runtime or network access.
"""
