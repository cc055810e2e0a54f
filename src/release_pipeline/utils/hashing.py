"""Deterministic SHA-256 helpers for stored and published artifacts."""

from __future__ import annotations

import hashlib
import os
import stat
from pathlib import Path

PathLike = str | os.PathLike[str]

_FILE_READ_CHUNK_BYTES = 1024 * 1024

__all__ = [
    "sha256_path",
    "sha256_file",
    "sha256_text",
    "tree_manifest",
]


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return hashlib.sha256(text.encode(encoding)).hexdigest()


def sha256_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> str:
    """Return SHA-256 hex digest for a file read in chunks."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    with Path(path).open("rb") as file_handle:
        while True:
            chunk = file_handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def tree_manifest(directory: PathLike) -> dict[str, str]:
    """
    Build a deterministic file manifest for ``directory``.

    Keys are relative POSIX paths, values lowercase SHA-256 digests. Only regular
    files are listed and symlinks are never followed.
    """

    root = Path(directory).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    manifest: dict[str, str] = {}
    for current_dir, dir_names, file_names in os.walk(root, topdown=True, followlinks=False):
        dir_names.sort()
        file_names.sort()
        current = Path(current_dir)
        for file_name in file_names:
            file_path = current / file_name
            try:
                mode = file_path.lstat().st_mode
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(mode):
                continue
            manifest[file_path.relative_to(root).as_posix()] = sha256_file(file_path)

    return dict(sorted(manifest.items()))


def sha256_path(path: PathLike) -> str:
    """Digest a file, or a directory via the digest of its canonical manifest."""

    target = Path(path)
    if target.is_dir():
        lines = (f"{name}\t{digest}" for name, digest in tree_manifest(target).items())
        return sha256_text("\n".join(lines))
    return sha256_file(target)
