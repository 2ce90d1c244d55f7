"""
Extended attribute access that never follows symlinks.

The stdlib ``os.*xattr`` helpers hide the size query from the caller, so
these wrappers talk to libc directly through ``ctypes``. Listing and
reading use a size-then-fetch sequence that restarts whenever another
process grows the attribute list between the two calls (``ERANGE``).
"""

from __future__ import annotations

import ctypes
import ctypes.util
import errno
import os
from collections.abc import Callable, Collection
from functools import lru_cache

__all__ = [
    "lclearxattrs",
    "lgetxattr",
    "llistxattr",
    "lremovexattr",
    "lsetxattr",
]

# Errors that mean "this attribute belongs to someone more privileged".
_PERMISSION_ERRNOS = frozenset({errno.EPERM, errno.EACCES})


@lru_cache(maxsize=1)
def _libc() -> ctypes.CDLL:
    libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
    char_p, void_p, size_t = ctypes.c_char_p, ctypes.c_void_p, ctypes.c_size_t
    libc.llistxattr.argtypes = [char_p, void_p, size_t]
    libc.llistxattr.restype = ctypes.c_ssize_t
    libc.lgetxattr.argtypes = [char_p, char_p, void_p, size_t]
    libc.lgetxattr.restype = ctypes.c_ssize_t
    libc.lsetxattr.argtypes = [char_p, char_p, void_p, size_t, ctypes.c_int]
    libc.lsetxattr.restype = ctypes.c_int
    libc.lremovexattr.argtypes = [char_p, char_p]
    libc.lremovexattr.restype = ctypes.c_int
    return libc


def _raise_errno(path: bytes) -> None:
    err = ctypes.get_errno()
    raise OSError(err, os.strerror(err), os.fsdecode(path))


def _sys_llistxattr(path: bytes, size: int | None) -> int | bytes:
    """Raw ``llistxattr``. With *size* None, return the required length."""
    if size is None:
        ret = _libc().llistxattr(path, None, ctypes.c_size_t(0))
        if ret < 0:
            _raise_errno(path)
        return ret
    # A zero-length buffer would turn the call back into a size query.
    buffer = ctypes.create_string_buffer(max(size, 1))
    ret = _libc().llistxattr(path, buffer, ctypes.c_size_t(len(buffer)))
    if ret < 0:
        _raise_errno(path)
    return buffer.raw[:ret]


def _sys_lgetxattr(path: bytes, name: bytes, size: int | None) -> int | bytes:
    """Raw ``lgetxattr``. With *size* None, return the required length."""
    if size is None:
        ret = _libc().lgetxattr(path, name, None, ctypes.c_size_t(0))
        if ret < 0:
            _raise_errno(path)
        return ret
    buffer = ctypes.create_string_buffer(max(size, 1))
    ret = _libc().lgetxattr(path, name, buffer, ctypes.c_size_t(len(buffer)))
    if ret < 0:
        _raise_errno(path)
    return buffer.raw[:ret]


def _sys_lsetxattr(path: bytes, name: bytes, value: bytes) -> None:
    if _libc().lsetxattr(path, name, value, ctypes.c_size_t(len(value)), 0) < 0:
        _raise_errno(path)


def _sys_lremovexattr(path: bytes, name: bytes) -> None:
    if _libc().lremovexattr(path, name) < 0:
        _raise_errno(path)


def _size_then_fetch(call: Callable[[int | None], int | bytes]) -> bytes:
    while True:
        size = call(None)
        try:
            return call(size)
        except OSError as exc:
            # Someone grew the value between our two calls; start over.
            if exc.errno == errno.ERANGE:
                continue
            raise


def llistxattr(path: str | os.PathLike[str]) -> list[str]:
    """Return the names of all extended attributes on *path*."""
    bpath = os.fsencode(path)
    buffer = _size_then_fetch(lambda size: _sys_llistxattr(bpath, size))
    # "" is not a valid attribute name, so it is skipped rather than reported.
    return [os.fsdecode(name) for name in buffer.split(b"\0") if name]


def lgetxattr(path: str | os.PathLike[str], name: str) -> bytes:
    """Return the value of attribute *name* on *path*."""
    bpath = os.fsencode(path)
    bname = os.fsencode(name)
    return _size_then_fetch(lambda size: _sys_lgetxattr(bpath, bname, size))


def lsetxattr(path: str | os.PathLike[str], name: str, value: bytes) -> None:
    _sys_lsetxattr(os.fsencode(path), os.fsencode(name), value)


def lremovexattr(path: str | os.PathLike[str], name: str) -> None:
    _sys_lremovexattr(os.fsencode(path), os.fsencode(name))


def lclearxattrs(path: str | os.PathLike[str], except_: Collection[str] = ()) -> None:
    """
    Remove every extended attribute on *path* whose name is not in *except_*.

    A permission error on a single attribute is skipped, since it means the
    attribute is a security label (or similar) that the caller does not own.
    Any other failure is raised.
    """
    for name in llistxattr(path):
        if name in except_:
            continue
        try:
            lremovexattr(path, name)
        except OSError as exc:
            if exc.errno in _PERMISSION_ERRNOS:
                continue
            raise
