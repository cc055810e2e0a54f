"""
release-pipeline — per-plan artifact store.

File: src/release_pipeline/artifacts/store.py

Purpose
- Path-addressed storage where stages deposit outputs and downstream stages read inputs.
- Explicit ownership handoff between stages that run under different identities.

Functional requirements
- ``put`` is atomic and write-once per logical artifact key.
- A failed second ``put`` leaves the stored artifact byte-for-byte unchanged.
- Publication copies only refs that declare ``publish_as`` and writes a digest manifest.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from release_pipeline.artifacts.identity import Identity
from release_pipeline.domain.errors import ArtifactHazardError, ArtifactMissingError
from release_pipeline.domain.models import ArtifactRef
from release_pipeline.utils.fs import atomic_copy, atomic_write, safe_delete
from release_pipeline.utils.hashing import sha256_path

logger = logging.getLogger(__name__)

ChownFn = Callable[..., None]

MANIFEST_FILENAME = "manifest.json"


@dataclass(frozen=True, slots=True)
class ArtifactRecord:
    ref: ArtifactRef
    path: Path
    sha256: str
    size_bytes: int


class ArtifactStore:
    """Write-once artifact area for one build plan."""

    def __init__(
        self,
        root: Path | str,
        plan_id: str,
        *,
        identity: Identity | None = None,
        chown: ChownFn = os.chown,
    ) -> None:
        self._root = Path(root).resolve()
        self._plan_id = plan_id
        self._plan_root = self._root / plan_id
        self._plan_root.mkdir(parents=True, exist_ok=True)
        self._identity = identity if identity is not None else Identity.current()
        self._chown = chown
        self._lock = threading.Lock()
        self._records: dict[str, ArtifactRecord] = {}
        self._reserved: set[str] = set()

    @property
    def plan_id(self) -> str:
        return self._plan_id

    @property
    def plan_root(self) -> Path:
        return self._plan_root

    @property
    def identity(self) -> Identity:
        return self._identity

    def path_for(self, ref: ArtifactRef) -> Path:
        """Location ``ref`` occupies once stored; stable before and after ``put``."""

        return self._plan_root / ref.key / Path(ref.path).name

    def put(self, ref: ArtifactRef, source: Path | str) -> ArtifactRecord:
        key = ref.key
        destination = self.path_for(ref)
        with self._lock:
            if key in self._records or key in self._reserved or destination.exists():
                raise ArtifactHazardError(
                    f"artifact {key!r} of plan {self._plan_id!r} was already written"
                )
            self._reserved.add(key)

        try:
            atomic_copy(source, destination)
            digest = sha256_path(destination)
            size_bytes = _size_of(destination)
        except OSError as exc:
            with self._lock:
                self._reserved.discard(key)
            raise ArtifactHazardError(
                f"unable to store artifact {key!r} from {source!s}: {exc}"
            ) from exc

        record = ArtifactRecord(ref=ref, path=destination, sha256=digest, size_bytes=size_bytes)
        with self._lock:
            self._reserved.discard(key)
            self._records[key] = record
        logger.debug(
            "artifact stored", extra={"artifact": key, "path": destination, "sha256": digest}
        )
        return record

    def exists(self, ref: ArtifactRef) -> bool:
        with self._lock:
            return ref.key in self._records

    def get(self, ref: ArtifactRef) -> Path:
        with self._lock:
            record = self._records.get(ref.key)
        if record is None:
            raise ArtifactMissingError(
                f"artifact {ref.key!r} of plan {self._plan_id!r} has not been produced"
            )
        return record.path

    def records(self) -> tuple[ArtifactRecord, ...]:
        with self._lock:
            return tuple(self._records[key] for key in sorted(self._records))

    def reown(self, path: Path | str, identity: Identity | None = None) -> int:
        """
        Recursively hand ``path`` over to ``identity`` (default: the store's owner).

        Symlinks are re-owned themselves and never followed. Returns the number of
        entries changed.
        """

        target = Path(path)
        owner = identity if identity is not None else self._identity
        if not target.exists() and not target.is_symlink():
            raise ArtifactHazardError(f"cannot reown missing path {target!s}")

        changed = 0
        try:
            self._chown(target, owner.uid, owner.gid, follow_symlinks=False)
            changed += 1
            if target.is_dir() and not target.is_symlink():
                for current, dir_names, file_names in os.walk(target, followlinks=False):
                    base = Path(current)
                    for name in (*sorted(dir_names), *sorted(file_names)):
                        self._chown(base / name, owner.uid, owner.gid, follow_symlinks=False)
                        changed += 1
        except OSError as exc:
            raise ArtifactHazardError(
                f"failed to reown {target!s} to {owner.name} ({owner.uid}:{owner.gid}): {exc}"
            ) from exc
        return changed

    def publish(self, publish_dir: Path | str) -> tuple[Path, ...]:
        """Copy publishable artifacts to ``<publish_dir>/<plan_id>/`` with a manifest."""

        publish_root = Path(publish_dir).resolve()
        destination_dir = publish_root / self._plan_id
        destination_dir.mkdir(parents=True, exist_ok=True)

        published: list[Path] = []
        manifest: dict[str, str] = {}
        for record in self.records():
            name = record.ref.publish_as
            if name is None:
                continue
            destination = destination_dir / name
            safe_delete(destination, publish_root)
            atomic_copy(record.path, destination)
            published.append(destination)
            manifest[name] = record.sha256

        atomic_write(
            destination_dir / MANIFEST_FILENAME,
            json.dumps(manifest, sort_keys=True, indent=2) + "\n",
        )
        return tuple(published)

    def cleanup(self, *, failed: bool, retain_diagnostics: bool) -> bool:
        """Remove the plan's scratch artifacts; returns ``False`` when retained."""

        if failed and retain_diagnostics:
            logger.info(
                "retaining scratch artifacts for diagnostics",
                extra={"plan_id": self._plan_id, "path": self._plan_root},
            )
            return False
        shutil.rmtree(self._plan_root, ignore_errors=True)
        with self._lock:
            self._records.clear()
        return True


def _size_of(path: Path) -> int:
    if not path.is_dir():
        return path.stat().st_size
    total = 0
    for current, _dir_names, file_names in os.walk(path, followlinks=False):
        for name in file_names:
            total += (Path(current) / name).lstat().st_size
    return total


__all__ = ["ArtifactRecord", "ArtifactStore", "ChownFn", "MANIFEST_FILENAME"]
