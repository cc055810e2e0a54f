"""Artifact storage, ownership handoff and the shared registry cache."""

from release_pipeline.artifacts.identity import Identity
from release_pipeline.artifacts.registry_cache import RegistryCache
from release_pipeline.artifacts.store import (
    MANIFEST_FILENAME,
    ArtifactRecord,
    ArtifactStore,
    ChownFn,
)

__all__ = [
    "MANIFEST_FILENAME",
    "ArtifactRecord",
    "ArtifactStore",
    "ChownFn",
    "Identity",
    "RegistryCache",
]
