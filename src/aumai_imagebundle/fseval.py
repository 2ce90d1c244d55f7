"""
Filesystem access strategies.

Unpack, repack and the snapshot walker do all of their filesystem work
through an ``FsEval`` so the privilege model is chosen once by the caller:
``DEFAULT_FS_EVAL`` performs plain syscalls, ``ROOTLESS_FS_EVAL`` works
around the limits of an unprivileged user (temporarily granting itself
access to its own files, skipping device nodes and privileged xattrs).
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
from collections.abc import Callable, Collection
from typing import BinaryIO, TypeVar

from . import xattr
from .models import MapOptions

__all__ = [
    "DEFAULT_FS_EVAL",
    "FsEval",
    "ROOTLESS_FS_EVAL",
    "RootlessFsEval",
    "fs_eval_for",
]

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_UNPRIVILEGED_XATTR_ERRNOS = frozenset({errno.EPERM, errno.EACCES, errno.ENOTSUP})


class FsEval:
    """Plain filesystem access. Paths are never followed through a final symlink."""

    rootless = False

    def lstat(self, path: str) -> os.stat_result:
        return os.lstat(path)

    def readlink(self, path: str) -> str:
        return os.readlink(path)

    def listdir(self, path: str) -> list[str]:
        return os.listdir(path)

    def open(self, path: str, mode: str = "rb") -> BinaryIO:
        return open(path, mode)  # type: ignore[return-value]

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        os.mkdir(path, mode)

    def mknod(self, path: str, mode: int, device: int = 0) -> bool:
        """Create a device node or fifo; return False if it was skipped."""
        os.mknod(path, mode, device)
        return True

    def symlink(self, target: str, path: str) -> None:
        os.symlink(target, path)

    def link(self, source: str, path: str) -> None:
        os.link(source, path, follow_symlinks=False)

    def lchown(self, path: str, uid: int, gid: int) -> None:
        os.lchown(path, uid, gid)

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def lutimes(self, path: str, atime: float, mtime: float) -> None:
        os.utime(path, (atime, mtime), follow_symlinks=False)

    def remove_all(self, path: str) -> None:
        if stat.S_ISDIR(self.lstat(path).st_mode):
            shutil.rmtree(path)
        else:
            os.unlink(path)

    def llistxattr(self, path: str) -> list[str]:
        return xattr.llistxattr(path)

    def lgetxattr(self, path: str, name: str) -> bytes:
        return xattr.lgetxattr(path, name)

    def lsetxattr(self, path: str, name: str, value: bytes) -> None:
        xattr.lsetxattr(path, name, value)

    def lclearxattrs(self, path: str, except_: Collection[str] = ()) -> None:
        xattr.lclearxattrs(path, except_)


class RootlessFsEval(FsEval):
    """
    Access for an unprivileged user.

    An operation that fails with ``EACCES`` is retried once after granting
    the owner full access to the path and its ancestors; the original modes
    are put back afterwards.
    """

    rootless = True

    def _unpriv(self, path: str, func: Callable[[], _T]) -> _T:
        try:
            return func()
        except PermissionError:
            restore = _grant_owner_access(path)
        try:
            return func()
        finally:
            for target, mode in reversed(restore):
                os.chmod(target, mode)

    def lstat(self, path: str) -> os.stat_result:
        return self._unpriv(path, lambda: os.lstat(path))

    def readlink(self, path: str) -> str:
        return self._unpriv(path, lambda: os.readlink(path))

    def listdir(self, path: str) -> list[str]:
        return self._unpriv(path, lambda: os.listdir(path))

    def open(self, path: str, mode: str = "rb") -> BinaryIO:
        return self._unpriv(path, lambda: open(path, mode))  # type: ignore[return-value]

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        self._unpriv(path, lambda: os.mkdir(path, mode))

    def mknod(self, path: str, mode: int, device: int = 0) -> bool:
        if stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
            logger.warning("rootless: skipping device node %s", path)
            return False
        self._unpriv(path, lambda: os.mknod(path, mode, device))
        return True

    def symlink(self, target: str, path: str) -> None:
        self._unpriv(path, lambda: os.symlink(target, path))

    def link(self, source: str, path: str) -> None:
        self._unpriv(path, lambda: os.link(source, path, follow_symlinks=False))

    def lchown(self, path: str, uid: int, gid: int) -> None:
        st = self.lstat(path)
        if (st.st_uid, st.st_gid) == (uid, gid):
            return
        os.lchown(path, uid, gid)

    def chmod(self, path: str, mode: int) -> None:
        self._unpriv(path, lambda: os.chmod(path, mode))

    def lutimes(self, path: str, atime: float, mtime: float) -> None:
        self._unpriv(path, lambda: os.utime(path, (atime, mtime), follow_symlinks=False))

    def remove_all(self, path: str) -> None:
        if not stat.S_ISDIR(self.lstat(path).st_mode):
            self._unpriv(path, lambda: os.unlink(path))
            return

        def _open_up(target: str) -> None:
            st = os.lstat(target)
            if not stat.S_ISDIR(st.st_mode):
                return
            if st.st_uid == os.geteuid():
                os.chmod(target, stat.S_IMODE(st.st_mode) | stat.S_IRWXU)
            for name in os.listdir(target):
                _open_up(os.path.join(target, name))

        def _remove() -> None:
            _open_up(path)
            shutil.rmtree(path)

        self._unpriv(path, _remove)

    def llistxattr(self, path: str) -> list[str]:
        return self._unpriv(path, lambda: xattr.llistxattr(path))

    def lgetxattr(self, path: str, name: str) -> bytes:
        return self._unpriv(path, lambda: xattr.lgetxattr(path, name))

    def lsetxattr(self, path: str, name: str, value: bytes) -> None:
        try:
            xattr.lsetxattr(path, name, value)
        except OSError as exc:
            if exc.errno in _UNPRIVILEGED_XATTR_ERRNOS and not name.startswith("user."):
                logger.warning("rootless: ignoring xattr %s on %s: %s", name, path, exc.strerror)
                return
            raise


def _grant_owner_access(path: str) -> list[tuple[str, int]]:
    """Give the owner rwx on *path*'s ancestors (and *path*); return the old modes."""
    euid = os.geteuid()
    changed: list[tuple[str, int]] = []
    ancestors = []
    current = os.path.abspath(path)
    while True:
        parent = os.path.dirname(current)
        if parent == current:
            break
        ancestors.append(parent)
        current = parent
    for target in [*reversed(ancestors), os.path.abspath(path)]:
        try:
            st = os.lstat(target)
        except FileNotFoundError:
            continue
        if st.st_uid != euid or stat.S_ISLNK(st.st_mode):
            continue
        mode = stat.S_IMODE(st.st_mode)
        wanted = stat.S_IRWXU if stat.S_ISDIR(st.st_mode) else stat.S_IRUSR | stat.S_IWUSR
        if mode & wanted != wanted:
            os.chmod(target, mode | wanted)
            changed.append((target, mode))
    return changed


DEFAULT_FS_EVAL = FsEval()
ROOTLESS_FS_EVAL = RootlessFsEval()


def fs_eval_for(map_options: MapOptions) -> FsEval:
    return ROOTLESS_FS_EVAL if map_options.rootless else DEFAULT_FS_EVAL
