"""
mtree-style filesystem snapshots.

A snapshot records, for every path under a root, the values of a fixed
list of keywords. The text form is deterministic: entries are sorted by
path, keywords are written in list order and extended attributes by name.
Changing ``MTREE_KEYWORDS`` changes the bytes of every snapshot written
afterwards.
"""

from __future__ import annotations

import base64
import errno
import hashlib
import io
import logging
import os
import stat
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import TextIO

from .errors import SnapshotError
from .fseval import DEFAULT_FS_EVAL, FsEval

__all__ = [
    "Difference",
    "Entry",
    "MTREE_KEYWORDS",
    "Snapshot",
    "compare",
    "parse",
    "walk",
]

logger = logging.getLogger(__name__)

MTREE_KEYWORDS: tuple[str, ...] = (
    "type",
    "size",
    "uid",
    "gid",
    "mode",
    "nlink",
    "link",
    "device",
    "tar_time",
    "sha256digest",
    "xattr",
)

_HEADER = "#mtree v2.0"
_KEYWORDS_PREFIX = "# keywords: "
_ROOT = "."
_CHUNK_SIZE = 65536

_TYPE_NAMES = {
    stat.S_IFREG: "file",
    stat.S_IFDIR: "dir",
    stat.S_IFLNK: "link",
    stat.S_IFCHR: "char",
    stat.S_IFBLK: "block",
    stat.S_IFIFO: "fifo",
    stat.S_IFSOCK: "socket",
}

# Bytes written verbatim in paths and link targets; everything else is
# escaped as a backslash followed by three octal digits.
_PLAIN = frozenset(
    b for b in range(0x21, 0x7F) if b not in (ord("\\"), ord("#"), ord("="))
)


def _escape(text: str) -> str:
    out = []
    for b in os.fsencode(text):
        out.append(chr(b) if b in _PLAIN else f"\\{b:03o}")
    return "".join(out)


def _unescape(text: str) -> str:
    raw = bytearray()
    i = 0
    while i < len(text):
        if text[i] == "\\":
            raw.append(int(text[i + 1:i + 4], 8))
            i += 4
        else:
            raw.extend(text[i].encode("utf-8"))
            i += 1
    return os.fsdecode(bytes(raw))


@dataclass(frozen=True)
class Entry:
    """One path of a snapshot and its keyword values (xattrs as ``xattr.<name>``)."""

    path: str
    values: dict[str, str] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.values.get("type", "")

    @property
    def xattrs(self) -> dict[str, bytes]:
        return {
            _unescape(key[len("xattr."):]): base64.b64decode(value)
            for key, value in self.values.items()
            if key.startswith("xattr.")
        }

    def format(self) -> str:
        name = _ROOT if self.path == _ROOT else "./" + _escape(self.path)
        return " ".join([name, *(f"{key}={value}" for key, value in self.values.items())])


@dataclass(frozen=True)
class Difference:
    """A path that differs between two snapshots."""

    path: str
    kind: str  # "missing", "extra" or "modified"
    old: Entry | None = None
    new: Entry | None = None
    changed: tuple[str, ...] = ()


class Snapshot:
    """Ordered collection of :class:`Entry` keyed by path."""

    def __init__(self, entries: Sequence[Entry] = (), keywords: Sequence[str] = MTREE_KEYWORDS) -> None:
        self.keywords = tuple(keywords)
        self._entries = {entry.path: entry for entry in sorted(entries, key=_sort_key)}

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __getitem__(self, path: str) -> Entry:
        return self._entries[path]

    def get(self, path: str) -> Entry | None:
        return self._entries.get(path)

    def paths(self) -> list[str]:
        return list(self._entries)

    def write(self, fh: TextIO) -> None:
        fh.write(_HEADER + "\n")
        fh.write(_KEYWORDS_PREFIX + " ".join(self.keywords) + "\n")
        for entry in self:
            fh.write(entry.format() + "\n")

    def dumps(self) -> str:
        buf = io.StringIO()
        self.write(buf)
        return buf.getvalue()


def _sort_key(entry: Entry) -> str:
    return "" if entry.path == _ROOT else entry.path


def _entry_for(root: str, rel: str, keywords: Sequence[str], fs_eval: FsEval) -> tuple[Entry, bool]:
    path = root if rel == _ROOT else os.path.join(root, rel)
    st = fs_eval.lstat(path)
    fmt = stat.S_IFMT(st.st_mode)
    values: dict[str, str] = {}
    for keyword in keywords:
        if keyword == "type":
            values["type"] = _TYPE_NAMES.get(fmt, "unknown")
        elif keyword == "size" and fmt in (stat.S_IFREG, stat.S_IFLNK):
            values["size"] = str(st.st_size)
        elif keyword == "uid":
            values["uid"] = str(st.st_uid)
        elif keyword == "gid":
            values["gid"] = str(st.st_gid)
        elif keyword == "mode":
            values["mode"] = f"{stat.S_IMODE(st.st_mode):04o}"
        elif keyword == "nlink":
            values["nlink"] = str(st.st_nlink)
        elif keyword == "link" and fmt == stat.S_IFLNK:
            values["link"] = _escape(fs_eval.readlink(path))
        elif keyword == "device" and fmt in (stat.S_IFCHR, stat.S_IFBLK):
            values["device"] = f"native,{os.major(st.st_rdev)},{os.minor(st.st_rdev)}"
        elif keyword == "tar_time":
            values["tar_time"] = f"{int(st.st_mtime)}.000000000"
        elif keyword == "sha256digest" and fmt == stat.S_IFREG:
            hasher = hashlib.sha256()
            with fs_eval.open(path, "rb") as fh:
                for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
                    hasher.update(chunk)
            values["sha256digest"] = hasher.hexdigest()
        elif keyword == "xattr":
            for name, value in sorted(_read_xattrs(path, fs_eval).items()):
                values["xattr." + _escape(name)] = base64.b64encode(value).decode("ascii")
    return Entry(rel, values), fmt == stat.S_IFDIR


def _read_xattrs(path: str, fs_eval: FsEval) -> dict[str, bytes]:
    try:
        names = fs_eval.llistxattr(path)
    except OSError as exc:
        if exc.errno == errno.ENOTSUP:
            return {}
        raise
    return {name: fs_eval.lgetxattr(path, name) for name in names}


def walk(
    root: str | os.PathLike[str],
    keywords: Sequence[str] = MTREE_KEYWORDS,
    fs_eval: FsEval = DEFAULT_FS_EVAL,
) -> Snapshot:
    """Snapshot the tree under *root*, reading it through *fs_eval*."""
    root = os.fspath(root)
    entries: list[Entry] = []
    pending = [_ROOT]
    while pending:
        rel = pending.pop()
        try:
            entry, is_dir = _entry_for(root, rel, keywords, fs_eval)
            entries.append(entry)
            if is_dir:
                directory = root if rel == _ROOT else os.path.join(root, rel)
                for name in fs_eval.listdir(directory):
                    pending.append(name if rel == _ROOT else f"{rel}/{name}")
        except OSError as exc:
            raise SnapshotError(f"walk {os.path.join(root, rel)}: {exc}") from exc
    logger.debug("walked %s: %d entries", root, len(entries))
    return Snapshot(entries, keywords)


def parse(fh: TextIO) -> Snapshot:
    """Read a snapshot written by :meth:`Snapshot.write`."""
    keywords: Sequence[str] = MTREE_KEYWORDS
    entries = []
    for lineno, line in enumerate(fh, 1):
        line = line.strip()
        if not line:
            continue
        if line.startswith(_KEYWORDS_PREFIX):
            keywords = line[len(_KEYWORDS_PREFIX):].split()
            continue
        if line.startswith("#"):
            continue
        name, *pairs = line.split(" ")
        if name == _ROOT:
            path = _ROOT
        elif name.startswith("./"):
            path = _unescape(name[2:])
        else:
            raise SnapshotError(f"snapshot line {lineno}: invalid path {name!r}")
        values = {}
        for pair in pairs:
            key, sep, value = pair.partition("=")
            if not sep:
                raise SnapshotError(f"snapshot line {lineno}: invalid keyword {pair!r}")
            values[key] = value
        entries.append(Entry(path, values))
    return Snapshot(entries, keywords)


def compare(old: Snapshot, new: Snapshot, ignore: Sequence[str] = ()) -> list[Difference]:
    """
    List the paths that differ from *old* to *new*.

    ``missing`` paths are only in *old*, ``extra`` paths only in *new*, and
    ``modified`` paths have at least one keyword value that changed. Keywords
    in *ignore* are not compared.
    """
    diffs = []
    for path in sorted(set(old.paths()) | set(new.paths()), key=lambda p: "" if p == _ROOT else p):
        before, after = old.get(path), new.get(path)
        if after is None:
            diffs.append(Difference(path, "missing", old=before))
        elif before is None:
            diffs.append(Difference(path, "extra", new=after))
        else:
            keys = (set(before.values) | set(after.values)) - set(ignore)
            changed = tuple(
                sorted(k for k in keys if before.values.get(k) != after.values.get(k))
            )
            if changed:
                diffs.append(Difference(path, "modified", old=before, new=after, changed=changed))
    return diffs
