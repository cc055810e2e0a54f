"""Unit tests for the per-plan artifact store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from release_pipeline.artifacts import MANIFEST_FILENAME, ArtifactStore, Identity
from release_pipeline.domain.errors import ArtifactHazardError, ArtifactMissingError
from release_pipeline.domain.models import ArtifactRef
from release_pipeline.utils.hashing import sha256_file

_OWNER = Identity(uid=1000, gid=1000, name="builder")


class _RecordingChown:
    def __init__(self, *, fail_on: str | None = None) -> None:
        self.calls: list[tuple[Path, int, int]] = []
        self._fail_on = fail_on

    def __call__(self, path: Path, uid: int, gid: int, *, follow_symlinks: bool = True) -> None:
        assert follow_symlinks is False
        if self._fail_on is not None and Path(path).name == self._fail_on:
            raise PermissionError(f"operation not permitted: {path}")
        self.calls.append((Path(path), uid, gid))


def _store(tmp_path: Path, chown: _RecordingChown | None = None) -> ArtifactStore:
    return ArtifactStore(
        tmp_path / "artifacts",
        "x86_64",
        identity=_OWNER,
        chown=chown if chown is not None else _RecordingChown(),
    )


def _source(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / "work" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_put_then_get_returns_stored_copy(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ref = ArtifactRef(name="kernel", producer="build-kernel", path="out/vmlinuz")
    source = _source(tmp_path, "vmlinuz", "kernel-bytes")

    record = store.put(ref, source)

    assert store.exists(ref)
    assert store.get(ref) == record.path
    assert record.path.read_text(encoding="utf-8") == "kernel-bytes"
    assert record.sha256 == sha256_file(source)
    assert record.size_bytes == len("kernel-bytes")
    assert record.path.is_relative_to(store.plan_root)


def test_second_put_is_a_hazard_and_keeps_the_original(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ref = ArtifactRef(name="pkg", producer="build-pkg", path="pkg.bin")
    store.put(ref, _source(tmp_path, "first.bin", "original"))

    with pytest.raises(ArtifactHazardError, match="already written"):
        store.put(ref, _source(tmp_path, "second.bin", "clobbered"))

    assert store.get(ref).read_text(encoding="utf-8") == "original"


def test_fan_out_outputs_are_keyed_per_architecture(tmp_path: Path) -> None:
    store = _store(tmp_path)
    x86 = ArtifactRef(name="init", producer="build-init", path="init", architecture="x86_64")
    arm = ArtifactRef(name="init", producer="build-init", path="init", architecture="aarch64")

    store.put(x86, _source(tmp_path, "x86/init", "x86"))
    store.put(arm, _source(tmp_path, "arm/init", "arm"))

    assert store.get(x86).read_text(encoding="utf-8") == "x86"
    assert store.get(arm).read_text(encoding="utf-8") == "arm"
    assert [record.ref.key for record in store.records()] == ["init@aarch64", "init@x86_64"]


def test_get_missing_artifact_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ArtifactMissingError):
        store.get(ArtifactRef(name="iso", producer="assemble", path="image.iso"))


def test_put_of_missing_source_is_a_hazard_and_can_be_retried(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ref = ArtifactRef(name="iso", producer="assemble", path="image.iso")

    with pytest.raises(ArtifactHazardError, match="unable to store"):
        store.put(ref, tmp_path / "nowhere.iso")

    store.put(ref, _source(tmp_path, "image.iso", "iso"))
    assert store.exists(ref)


def test_reown_walks_tree_without_following_symlinks(tmp_path: Path) -> None:
    chown = _RecordingChown()
    store = _store(tmp_path, chown)
    tree = tmp_path / "target"
    (tree / "release").mkdir(parents=True)
    (tree / "release" / "pkg.bin").write_text("x", encoding="utf-8")
    (tree / "link").symlink_to(tmp_path)

    changed = store.reown(tree)

    assert changed == 4
    assert {uid for _path, uid, _gid in chown.calls} == {_OWNER.uid}
    assert [path.name for path, _uid, _gid in chown.calls][0] == "target"


def test_reown_failure_is_a_hazard(tmp_path: Path) -> None:
    store = _store(tmp_path, _RecordingChown(fail_on="pkg.bin"))
    tree = tmp_path / "target"
    tree.mkdir()
    (tree / "pkg.bin").write_text("x", encoding="utf-8")

    with pytest.raises(ArtifactHazardError, match="failed to reown"):
        store.reown(tree)


def test_reown_missing_path_is_a_hazard(tmp_path: Path) -> None:
    with pytest.raises(ArtifactHazardError, match="missing path"):
        _store(tmp_path).reown(tmp_path / "absent")


def test_publish_copies_only_publishable_refs_with_manifest(tmp_path: Path) -> None:
    store = _store(tmp_path)
    iso = ArtifactRef(name="iso", producer="assemble", path="image.iso", publish_as="os.iso")
    internal = ArtifactRef(name="rootfs", producer="assemble", path="rootfs.tar")
    store.put(iso, _source(tmp_path, "image.iso", "iso-bytes"))
    store.put(internal, _source(tmp_path, "rootfs.tar", "tar-bytes"))

    published = store.publish(tmp_path / "dist")

    destination = (tmp_path / "dist" / "x86_64").resolve()
    assert published == (destination / "os.iso",)
    manifest = json.loads((destination / MANIFEST_FILENAME).read_text(encoding="utf-8"))
    assert manifest == {"os.iso": sha256_file(destination / "os.iso")}
    assert not (destination / "rootfs.tar").exists()


def test_publish_replaces_previous_release(tmp_path: Path) -> None:
    store = _store(tmp_path)
    iso = ArtifactRef(name="iso", producer="assemble", path="image.iso", publish_as="os.iso")
    stale = tmp_path / "dist" / "x86_64" / "os.iso"
    stale.parent.mkdir(parents=True)
    stale.write_text("old", encoding="utf-8")
    store.put(iso, _source(tmp_path, "image.iso", "new"))

    store.publish(tmp_path / "dist")

    assert stale.read_text(encoding="utf-8") == "new"


@pytest.mark.parametrize(
    ("failed", "retain", "removed"),
    [(False, False, True), (False, True, True), (True, False, True), (True, True, False)],
)
def test_cleanup_retains_only_failed_plans_when_asked(
    tmp_path: Path, failed: bool, retain: bool, removed: bool
) -> None:
    store = _store(tmp_path)
    ref = ArtifactRef(name="pkg", producer="build-pkg", path="pkg.bin")
    store.put(ref, _source(tmp_path, "pkg.bin", "pkg"))

    assert store.cleanup(failed=failed, retain_diagnostics=retain) is removed
    assert store.plan_root.exists() is not removed
