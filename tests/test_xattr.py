"""Tests for aumai_imagebundle.xattr."""

from __future__ import annotations

import ctypes
import errno
from pathlib import Path

import pytest

from aumai_imagebundle import xattr
from oci_helpers import xattrs_supported


def _scripted(responses: list, calls: list):
    """Fake raw syscall returning (or raising) *responses* in order."""

    def fake(*args):
        calls.append(args[-1])
        result = responses.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    return fake


# ---------------------------------------------------------------------------
# Size-then-fetch races
# ---------------------------------------------------------------------------


class TestSizeRace:
    def test_list_retries_when_it_grows(self, monkeypatch: pytest.MonkeyPatch) -> None:
        final = b"user.a\0user.bb\0"
        calls: list = []
        responses = [7, OSError(errno.ERANGE, "Numerical result out of range"), len(final), final]
        monkeypatch.setattr(xattr, "_sys_llistxattr", _scripted(responses, calls))

        assert xattr.llistxattr("/nowhere") == ["user.a", "user.bb"]
        assert calls == [None, 7, None, len(final)]

    def test_get_retries_when_value_grows(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list = []
        responses = [2, OSError(errno.ERANGE, "Numerical result out of range"), 5, b"hello"]
        monkeypatch.setattr(xattr, "_sys_lgetxattr", _scripted(responses, calls))

        assert xattr.lgetxattr("/nowhere", "user.greeting") == b"hello"
        assert calls == [None, 2, None, 5]

    def test_other_errors_propagate(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list = []
        responses = [4, OSError(errno.EIO, "Input/output error")]
        monkeypatch.setattr(xattr, "_sys_llistxattr", _scripted(responses, calls))

        with pytest.raises(OSError) as excinfo:
            xattr.llistxattr("/nowhere")
        assert excinfo.value.errno == errno.EIO

    def test_empty_names_are_skipped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        raw = b"\0user.a\0\0"
        monkeypatch.setattr(xattr, "_sys_llistxattr", _scripted([len(raw), raw], []))
        assert xattr.llistxattr("/nowhere") == ["user.a"]

    def test_no_attributes(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(xattr, "_sys_llistxattr", _scripted([0, b""], []))
        assert xattr.llistxattr("/nowhere") == []


# ---------------------------------------------------------------------------
# lclearxattrs
# ---------------------------------------------------------------------------


class TestClear:
    def test_skips_permission_errors(self, monkeypatch: pytest.MonkeyPatch) -> None:
        removed: list[str] = []

        def fake_remove(path: str, name: str) -> None:
            if name.startswith("security."):
                raise OSError(errno.EPERM, "Operation not permitted")
            removed.append(name)

        monkeypatch.setattr(xattr, "llistxattr", lambda path: ["user.a", "security.selinux", "user.b"])
        monkeypatch.setattr(xattr, "lremovexattr", fake_remove)

        xattr.lclearxattrs("/nowhere")
        assert removed == ["user.a", "user.b"]

    def test_keeps_excepted_names(self, monkeypatch: pytest.MonkeyPatch) -> None:
        removed: list[str] = []
        monkeypatch.setattr(xattr, "llistxattr", lambda path: ["user.a", "user.keep"])
        monkeypatch.setattr(xattr, "lremovexattr", lambda path, name: removed.append(name))

        xattr.lclearxattrs("/nowhere", except_={"user.keep"})
        assert removed == ["user.a"]

    def test_other_errors_raise(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fake_remove(path: str, name: str) -> None:
            raise OSError(errno.EIO, "Input/output error")

        monkeypatch.setattr(xattr, "llistxattr", lambda path: ["user.a"])
        monkeypatch.setattr(xattr, "lremovexattr", fake_remove)

        with pytest.raises(OSError):
            xattr.lclearxattrs("/nowhere")


# ---------------------------------------------------------------------------
# Real filesystem
# ---------------------------------------------------------------------------


class TestFilesystem:
    def test_libc_rejects_text_paths(self) -> None:
        with pytest.raises(ctypes.ArgumentError):
            xattr._libc().llistxattr("not-bytes", None, 0)

    def test_missing_path(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            xattr.llistxattr(tmp_path / "missing")

    def test_set_get_list_clear(self, tmp_path: Path) -> None:
        if not xattrs_supported(tmp_path):
            pytest.skip("filesystem does not support user xattrs")
        target = tmp_path / "file"
        target.write_bytes(b"")

        xattr.lsetxattr(target, "user.one", b"1")
        xattr.lsetxattr(target, "user.big", b"x" * 4000)
        assert {"user.one", "user.big"} <= set(xattr.llistxattr(target))
        assert xattr.lgetxattr(target, "user.big") == b"x" * 4000

        xattr.lclearxattrs(target)
        assert not [n for n in xattr.llistxattr(target) if n.startswith("user.")]

    def test_symlink_is_not_followed(self, tmp_path: Path) -> None:
        if not xattrs_supported(tmp_path):
            pytest.skip("filesystem does not support user xattrs")
        target = tmp_path / "file"
        target.write_bytes(b"")
        xattr.lsetxattr(target, "user.one", b"1")
        link = tmp_path / "link"
        link.symlink_to(target)

        assert "user.one" not in xattr.llistxattr(link)
