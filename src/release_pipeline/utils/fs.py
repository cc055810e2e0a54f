"""
release-pipeline — filesystem utilities

File: src/release_pipeline/utils/fs.py

Purpose
- Atomic writes and copies so readers never observe a partially written artifact.
- Guarded deletion that refuses paths outside a given root.

Functional requirements
- Temp files/directories live beside the destination and are swapped in one rename.
- Deletion never follows symlinks out of the root.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_copy",
    "atomic_write",
    "is_within",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_copy(source: PathLike, destination: PathLike) -> Path:
    """
    Copy a file or directory tree to ``destination`` in one visible step.

    The copy is staged under a hidden sibling name and renamed into place, so a
    concurrent reader sees either nothing or the complete artifact. An existing
    destination raises ``FileExistsError``.
    """

    src = Path(source)
    target = Path(destination)
    if not src.exists():
        raise FileNotFoundError(f"{src!s} does not exist")
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists() or target.is_symlink():
        raise FileExistsError(f"{target!s} already exists")

    staging = Path(
        tempfile.mkdtemp(prefix=f".{target.name}.", suffix=".partial", dir=str(target.parent))
    )
    staged_item = staging / target.name
    try:
        if src.is_dir():
            shutil.copytree(src, staged_item, symlinks=True)
        else:
            shutil.copy2(src, staged_item)
            with staged_item.open("rb") as handle:
                os.fsync(handle.fileno())
        if target.exists():
            raise FileExistsError(f"{target!s} already exists")
        os.rename(staged_item, target)
        _fsync_directory(target.parent)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    return target


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False
    return _is_relative_to(resolved_child, resolved_parent)


def safe_delete(path: PathLike, root: PathLike) -> bool:
    """
    Delete ``path`` only if it is contained within ``root``.

    Returns ``False`` when there was nothing to delete. Symlinks are unlinked
    without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return False

    candidate = target.parent.resolve(strict=True) / target.name
    if not _is_relative_to(candidate, workspace) or candidate == workspace:
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return True

    if target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    # Some filesystems reject fsync on directories.
    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
