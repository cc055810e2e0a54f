"""Tests for atomic writes, atomic copies and guarded deletion."""

from __future__ import annotations

from pathlib import Path

import pytest

from release_pipeline.utils.fs import atomic_copy, atomic_write, is_within, safe_delete


def test_atomic_write_replaces_content_without_temp_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "report.json"
    atomic_write(target, "{}\n")
    atomic_write(target, b"[]\n")

    assert target.read_bytes() == b"[]\n"
    assert [path.name for path in tmp_path.iterdir()] == ["report.json"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "report.json", "{}")


def test_atomic_copy_copies_files_and_trees(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / "release").mkdir(parents=True)
    (source / "release" / "startbox").write_text("bin", encoding="utf-8")
    (source / "latest").symlink_to("release")

    copied = atomic_copy(source, tmp_path / "out" / "tree")
    single = atomic_copy(source / "release" / "startbox", tmp_path / "out" / "startbox")

    assert (copied / "release" / "startbox").read_text(encoding="utf-8") == "bin"
    assert (copied / "latest").is_symlink()
    assert single.read_text(encoding="utf-8") == "bin"
    assert sorted(path.name for path in (tmp_path / "out").iterdir()) == ["startbox", "tree"]


def test_atomic_copy_refuses_to_overwrite(tmp_path: Path) -> None:
    source = tmp_path / "a"
    source.write_text("new", encoding="utf-8")
    target = tmp_path / "b"
    target.write_text("old", encoding="utf-8")

    with pytest.raises(FileExistsError):
        atomic_copy(source, target)
    with pytest.raises(FileNotFoundError):
        atomic_copy(tmp_path / "absent", tmp_path / "c")

    assert target.read_text(encoding="utf-8") == "old"


def test_is_within(tmp_path: Path) -> None:
    (tmp_path / "root" / "child").mkdir(parents=True)

    assert is_within(tmp_path / "root" / "child", tmp_path / "root")
    assert not is_within(tmp_path, tmp_path / "root")
    assert not is_within(tmp_path / "root" / "absent", tmp_path / "root")


def test_safe_delete_stays_inside_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    (root / "plan").mkdir(parents=True)
    (root / "plan" / "file").write_text("x", encoding="utf-8")
    outside = tmp_path / "keep"
    outside.mkdir()
    (root / "escape").symlink_to(outside)

    assert safe_delete(root / "plan", root)
    assert safe_delete(root / "escape", root)
    assert not safe_delete(root / "plan", root)

    assert outside.is_dir()
    with pytest.raises(ValueError, match="outside root"):
        safe_delete(outside, root)
    with pytest.raises(ValueError, match="outside root"):
        safe_delete(root, root)
