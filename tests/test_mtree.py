"""Tests for aumai_imagebundle.mtree."""

from __future__ import annotations

import hashlib
import io
import os
from pathlib import Path

import pytest

from aumai_imagebundle import mtree
from aumai_imagebundle.errors import SnapshotError
from oci_helpers import MTIME


@pytest.fixture()
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "tree"
    root.mkdir()
    (root / "b.txt").write_bytes(b"bee")
    (root / "a").mkdir()
    (root / "a" / "inner").write_bytes(b"inner")
    (root / "a" / "link").symlink_to("inner")
    (root / "with space").write_bytes(b"")
    for path in (root / "b.txt", root / "a" / "inner", root / "with space", root / "a", root):
        os.utime(path, (MTIME, MTIME))
    return root


# ---------------------------------------------------------------------------
# walk
# ---------------------------------------------------------------------------


class TestWalk:
    def test_paths_sorted_root_first(self, tree: Path) -> None:
        snapshot = mtree.walk(tree)
        assert snapshot.paths() == [".", "a", "a/inner", "a/link", "b.txt", "with space"]

    def test_file_values(self, tree: Path) -> None:
        entry = mtree.walk(tree)["b.txt"]
        assert entry.type == "file"
        assert entry.values["size"] == "3"
        assert entry.values["sha256digest"] == hashlib.sha256(b"bee").hexdigest()
        assert entry.values["tar_time"] == f"{MTIME}.000000000"
        assert entry.values["uid"] == str(os.getuid())

    def test_directory_has_no_size(self, tree: Path) -> None:
        entry = mtree.walk(tree)["a"]
        assert entry.type == "dir"
        assert "size" not in entry.values
        assert "sha256digest" not in entry.values

    def test_symlink_values(self, tree: Path) -> None:
        entry = mtree.walk(tree)["a/link"]
        assert entry.type == "link"
        assert entry.values["link"] == "inner"
        assert entry.values["size"] == str(len("inner"))

    def test_keyword_subset(self, tree: Path) -> None:
        snapshot = mtree.walk(tree, keywords=("type", "mode"))
        assert set(snapshot["b.txt"].values) == {"type", "mode"}

    def test_missing_root(self, tmp_path: Path) -> None:
        with pytest.raises(SnapshotError):
            mtree.walk(tmp_path / "missing")


# ---------------------------------------------------------------------------
# Text form
# ---------------------------------------------------------------------------


class TestTextForm:
    def test_deterministic(self, tree: Path) -> None:
        assert mtree.walk(tree).dumps() == mtree.walk(tree).dumps()

    def test_header_and_escaping(self, tree: Path) -> None:
        lines = mtree.walk(tree).dumps().splitlines()
        assert lines[0] == "#mtree v2.0"
        assert lines[1].startswith("# keywords: type size uid gid mode")
        assert lines[2].startswith(". type=dir")
        assert any(line.startswith("./with\\040space ") for line in lines)

    def test_parse_round_trip(self, tree: Path) -> None:
        snapshot = mtree.walk(tree)
        parsed = mtree.parse(io.StringIO(snapshot.dumps()))
        assert parsed.paths() == snapshot.paths()
        assert parsed.keywords == snapshot.keywords
        assert mtree.compare(snapshot, parsed) == []

    def test_xattr_values(self) -> None:
        entry = mtree.Entry("f", {"type": "file", "xattr.user.a\\040b": "aGVsbG8="})
        assert entry.xattrs == {"user.a b": b"hello"}

    def test_invalid_line(self) -> None:
        with pytest.raises(SnapshotError):
            mtree.parse(io.StringIO("#mtree v2.0\nbogus type=file\n"))

    def test_invalid_keyword(self) -> None:
        with pytest.raises(SnapshotError):
            mtree.parse(io.StringIO("./x type\n"))


# ---------------------------------------------------------------------------
# compare
# ---------------------------------------------------------------------------


class TestCompare:
    def test_unchanged(self, tree: Path) -> None:
        assert mtree.compare(mtree.walk(tree), mtree.walk(tree)) == []

    def test_added_removed_modified(self, tree: Path) -> None:
        before = mtree.walk(tree)
        (tree / "b.txt").write_bytes(b"changed")
        (tree / "with space").unlink()
        (tree / "a" / "new").write_bytes(b"new")
        after = mtree.walk(tree)

        diffs = {d.path: d for d in mtree.compare(before, after)}
        assert diffs["with space"].kind == "missing"
        assert diffs["a/new"].kind == "extra"
        assert diffs["b.txt"].kind == "modified"
        assert {"size", "sha256digest"} <= set(diffs["b.txt"].changed)
        assert diffs["a"].kind == "modified"

    def test_ignore_keywords(self, tree: Path) -> None:
        before = mtree.walk(tree)
        os.utime(tree / "b.txt", (MTIME + 60, MTIME + 60))
        after = mtree.walk(tree)
        assert [d.path for d in mtree.compare(before, after)] == ["b.txt"]
        assert mtree.compare(before, after, ignore=("tar_time",)) == []

    def test_mode_change(self, tree: Path) -> None:
        before = mtree.walk(tree)
        os.chmod(tree / "a" / "inner", 0o604)
        diffs = mtree.compare(before, mtree.walk(tree))
        assert [(d.path, d.changed) for d in diffs] == [("a/inner", ("mode",))]
