"""Utility exports for filesystem, hashing, and concurrency helpers."""

from release_pipeline.utils.concurrency import BoundedSemaphore, CancellationToken
from release_pipeline.utils.fs import atomic_copy, atomic_write, is_within, safe_delete
from release_pipeline.utils.hashing import sha256_file, sha256_path, sha256_text, tree_manifest

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "atomic_copy",
    "atomic_write",
    "is_within",
    "safe_delete",
    "sha256_file",
    "sha256_path",
    "sha256_text",
    "tree_manifest",
]
