"""
Layer application and generation.

Unpacking applies each layer tar of a manifest, earliest first, to
``<bundle>/rootfs``; whiteouts delete what lower layers created. Repacking
goes the other way: a list of snapshot differences becomes a layer tar.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import posixpath
import shutil
import stat
import tarfile
import threading
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING, BinaryIO

from .compress import compression_for_media_type, get_compressor
from .errors import BundleExistsError, CorruptBlobError, LayerApplyError
from .fseval import DEFAULT_FS_EVAL, FsEval
from .idtools import to_container, to_host
from .models import MapOptions, Manifest
from .pipe import pipe

if TYPE_CHECKING:
    from .cas import Engine
    from .mtree import Difference

__all__ = [
    "DigestReader",
    "ROOTFS_NAME",
    "TarExtractor",
    "WHITEOUT_OPAQUE",
    "WHITEOUT_PREFIX",
    "generate_layer",
    "secure_join",
    "unpack_layer",
    "unpack_manifest",
]

logger = logging.getLogger(__name__)

ROOTFS_NAME = "rootfs"
WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = WHITEOUT_PREFIX + WHITEOUT_PREFIX + ".opq"
PAX_XATTR_PREFIX = "SCHILY.xattr."

_CHUNK_SIZE = 65536
_MAX_SYMLINKS = 255

# Labels the host assigns; a layer never owns them.
_KEEP_XATTRS = frozenset({"security.selinux"})


def _clean_name(name: str) -> str:
    """Normalise a tar member name to a root-relative path ("" for the root)."""
    return posixpath.normpath("/" + name).lstrip("/")


def secure_join(root: str, unsafe: str, fs_eval: FsEval = DEFAULT_FS_EVAL) -> str:
    """
    Join *unsafe* onto *root*, resolving symlinks as if *root* were ``/``.

    The result never leaves *root*. Components that do not exist yet are
    appended lexically.
    """
    parts = deque(unsafe.split("/"))
    resolved = ""
    links = 0
    while parts:
        part = parts.popleft()
        if part in ("", "."):
            continue
        if part == "..":
            resolved = posixpath.dirname(resolved)
            continue
        candidate = posixpath.join(resolved, part)
        full = os.path.join(root, candidate)
        try:
            st = fs_eval.lstat(full)
        except FileNotFoundError:
            resolved = candidate
            continue
        if not stat.S_ISLNK(st.st_mode):
            resolved = candidate
            continue
        links += 1
        if links > _MAX_SYMLINKS:
            raise LayerApplyError(f"secure join {unsafe!r}: {os.strerror(errno.ELOOP)}")
        target = fs_eval.readlink(full)
        if target.startswith("/"):
            resolved = ""
        parts.extendleft(reversed(target.split("/")))
    return os.path.join(root, resolved) if resolved else root


class DigestReader:
    """Pass-through reader that hashes everything read from it."""

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader
        self.hasher = hashlib.sha256()

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        self.hasher.update(data)
        return data

    def drain(self) -> None:
        for _ in iter(lambda: self.read(_CHUNK_SIZE), b""):
            pass

    def close(self) -> None:
        self._reader.close()

    @property
    def digest(self) -> str:
        return f"sha256:{self.hasher.hexdigest()}"


class TarExtractor:
    """
    Applies layer tars to a root directory, one layer after another.

    Directory modes and times are held back until the end of each layer
    (and re-applied after every later layer) so that creating or removing
    children cannot disturb them.
    """

    def __init__(
        self,
        root: str,
        map_options: MapOptions | None = None,
        fs_eval: FsEval = DEFAULT_FS_EVAL,
    ) -> None:
        self.root = os.path.abspath(root)
        self.map_options = map_options or MapOptions()
        self.fs_eval = fs_eval
        self._dirs: dict[str, tuple[int, float, float]] = {self.root: (0o755, 0.0, 0.0)}
        self._upper: set[str] = set()
        self._layer = ""

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def apply_layer(self, reader: BinaryIO, name: str = "") -> None:
        """Apply one uncompressed layer tar read from *reader*."""
        self._layer = name
        self._upper = set()
        try:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                for member in tar:
                    self.apply_entry(tar, member)
        except tarfile.TarError as exc:
            raise LayerApplyError(f"layer {name}: read tar: {exc}") from exc
        self._restore_directories()

    def _restore_directories(self) -> None:
        # Deepest paths first, so fixing a child cannot bump a parent's mtime.
        for path in sorted(self._dirs, reverse=True):
            mode, atime, mtime = self._dirs[path]
            try:
                self.fs_eval.chmod(path, mode)
                self.fs_eval.lutimes(path, atime, mtime)
            except OSError as exc:
                raise LayerApplyError(f"layer {self._layer}: restore directory {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def apply_entry(self, tar: tarfile.TarFile, member: tarfile.TarInfo) -> None:
        rel = _clean_name(member.name)
        try:
            parent_rel, base = posixpath.split(rel)
            if base == WHITEOUT_OPAQUE:
                self._opaque_whiteout(parent_rel)
            elif base.startswith(WHITEOUT_PREFIX):
                target = base[len(WHITEOUT_PREFIX):]
                if target in ("", ".", ".."):
                    raise LayerApplyError(
                        f"layer {self._layer}: invalid whiteout {member.name!r}"
                    )
                self._whiteout(posixpath.join(parent_rel, target))
            elif not rel:
                self._apply_root(member)
            else:
                self._extract(tar, member, parent_rel, base)
        except LayerApplyError:
            raise
        except OSError as exc:
            raise LayerApplyError(f"layer {self._layer}: extract {member.name!r}: {exc}") from exc

    def _apply_root(self, member: tarfile.TarInfo) -> None:
        if not member.isdir():
            raise LayerApplyError(f"layer {self._layer}: root entry {member.name!r} is not a directory")
        self._apply_metadata(self.root, member)

    def _extract(self, tar: tarfile.TarFile, member: tarfile.TarInfo, parent_rel: str, base: str) -> None:
        fs = self.fs_eval
        parent = self._ensure_parent(parent_rel)
        path = os.path.join(parent, base)

        try:
            existing = fs.lstat(path)
        except FileNotFoundError:
            existing = None
        keep_dir = existing is not None and member.isdir() and stat.S_ISDIR(existing.st_mode)
        if existing is not None and not keep_dir:
            self._remove(path)

        if member.isreg():
            source = tar.extractfile(member)
            with fs.open(path, "wb") as dst:
                if source is not None:
                    shutil.copyfileobj(source, dst, _CHUNK_SIZE)
        elif member.isdir():
            if not keep_dir:
                fs.mkdir(path, 0o700)
        elif member.issym():
            fs.symlink(member.linkname, path)
        elif member.islnk():
            target = self._link_target(member.linkname)
            fs.link(target, path)
            self._upper.add(path)
            # The metadata belongs to the inode the link shares.
            return
        elif member.ischr() or member.isblk():
            kind = stat.S_IFCHR if member.ischr() else stat.S_IFBLK
            device = os.makedev(member.devmajor, member.devminor)
            if not fs.mknod(path, kind | (member.mode & 0o7777), device):
                return
        elif member.isfifo():
            fs.mknod(path, stat.S_IFIFO | (member.mode & 0o7777))
        else:
            raise LayerApplyError(
                f"layer {self._layer}: unsupported entry type {member.type!r} for {member.name!r}"
            )

        self._upper.add(path)
        if keep_dir:
            try:
                fs.lclearxattrs(path, _KEEP_XATTRS)
            except OSError as exc:
                if exc.errno != errno.ENOTSUP:
                    raise
        self._apply_metadata(path, member)

    def _apply_metadata(self, path: str, member: tarfile.TarInfo) -> None:
        fs = self.fs_eval
        uid = to_host(member.uid, self.map_options.uid_mappings)
        gid = to_host(member.gid, self.map_options.gid_mappings)
        fs.lchown(path, uid, gid)

        for name, value in _member_xattrs(member).items():
            fs.lsetxattr(path, name, value)

        mtime = float(member.mtime)
        atime = float(member.pax_headers.get("atime", mtime))
        mode = member.mode & 0o7777
        if member.isdir():
            self._dirs[path] = (mode, atime, mtime)
            return
        if not member.issym():
            fs.chmod(path, mode)
        fs.lutimes(path, atime, mtime)

    def _ensure_parent(self, parent_rel: str) -> str:
        parent = secure_join(self.root, parent_rel, self.fs_eval)
        current = self.root
        for part in os.path.relpath(parent, self.root).split(os.sep):
            if part in ("", "."):
                continue
            current = os.path.join(current, part)
            try:
                st = self.fs_eval.lstat(current)
            except FileNotFoundError:
                self.fs_eval.mkdir(current, 0o755)
                self._dirs[current] = (0o755, 0.0, 0.0)
                continue
            if not stat.S_ISDIR(st.st_mode):
                raise LayerApplyError(
                    f"layer {self._layer}: parent {current} of {parent_rel!r} is not a directory"
                )
        return parent

    def _link_target(self, linkname: str) -> str:
        rel = _clean_name(linkname)
        parent_rel, base = posixpath.split(rel)
        return os.path.join(secure_join(self.root, parent_rel, self.fs_eval), base)

    # ------------------------------------------------------------------
    # Whiteouts
    # ------------------------------------------------------------------

    def _whiteout(self, rel: str) -> None:
        parent_rel, base = posixpath.split(rel)
        if not base:
            raise LayerApplyError(f"layer {self._layer}: whiteout without a target in {parent_rel!r}")
        path = os.path.join(secure_join(self.root, parent_rel, self.fs_eval), base)
        if not self._inside_root(path):
            raise LayerApplyError(f"layer {self._layer}: whiteout {rel!r} escapes the root")
        try:
            self.fs_eval.lstat(path)
        except FileNotFoundError:
            logger.debug("layer %s: whiteout of missing path %s", self._layer, rel)
            return
        self._remove(path)

    def _inside_root(self, path: str) -> bool:
        return os.path.normpath(path).startswith(self.root + os.sep)

    def _opaque_whiteout(self, parent_rel: str) -> None:
        directory = secure_join(self.root, parent_rel, self.fs_eval)
        try:
            st = self.fs_eval.lstat(directory)
        except FileNotFoundError:
            return
        if stat.S_ISDIR(st.st_mode):
            self._clear_lower(directory)

    def _clear_lower(self, directory: str) -> None:
        """Remove everything under *directory* that the current layer did not write."""
        for name in self.fs_eval.listdir(directory):
            child = os.path.join(directory, name)
            prefix = child + os.sep
            if child not in self._upper and not any(p.startswith(prefix) for p in self._upper):
                self._remove(child)
            elif stat.S_ISDIR(self.fs_eval.lstat(child).st_mode):
                # A directory this layer declared keeps only what this layer put in it.
                self._clear_lower(child)

    def _remove(self, path: str) -> None:
        self.fs_eval.remove_all(path)
        prefix = path + os.sep
        for stale in [p for p in self._dirs if p == path or p.startswith(prefix)]:
            del self._dirs[stale]


def _member_xattrs(member: tarfile.TarInfo) -> dict[str, bytes]:
    xattrs = {}
    for key, value in member.pax_headers.items():
        if key.startswith(PAX_XATTR_PREFIX):
            name = key[len(PAX_XATTR_PREFIX):]
            if name:
                xattrs[name] = value.encode("utf-8", "surrogateescape")
    return xattrs


def unpack_layer(
    root: str,
    reader: BinaryIO,
    map_options: MapOptions | None = None,
    fs_eval: FsEval = DEFAULT_FS_EVAL,
) -> None:
    """Apply a single uncompressed layer tar to *root*."""
    extractor = TarExtractor(root, map_options, fs_eval)
    extractor.apply_layer(reader)


def unpack_manifest(
    engine: Engine,
    bundle: str,
    manifest: Manifest,
    map_options: MapOptions | None = None,
    fs_eval: FsEval = DEFAULT_FS_EVAL,
) -> None:
    """
    Create ``<bundle>/rootfs`` and apply every layer of *manifest* to it.

    A failure leaves whatever was extracted so far in place; removing a
    half-unpacked bundle is up to the caller.
    """
    root = os.path.join(bundle, ROOTFS_NAME)
    try:
        fs_eval.mkdir(root, 0o755)
    except FileExistsError as exc:
        raise BundleExistsError(f"{root} already exists") from exc

    config = engine.fetch_config(manifest.config)
    diff_ids = config.rootfs.diff_ids
    verify = len(diff_ids) == len(manifest.layers)
    if not verify:
        logger.warning(
            "config lists %d diff_ids for %d layers; not verifying layer contents",
            len(diff_ids), len(manifest.layers),
        )

    extractor = TarExtractor(root, map_options, fs_eval)
    for idx, descriptor in enumerate(manifest.layers):
        logger.info("unpacking layer %d/%d: %s", idx + 1, len(manifest.layers), descriptor.digest)
        compressor = get_compressor(compression_for_media_type(descriptor.media_type))
        with engine.fetch_blob(descriptor) as blob:
            reader = DigestReader(compressor.decompress(blob.stream))
            extractor.apply_layer(reader, descriptor.digest)  # type: ignore[arg-type]
            reader.drain()
        if verify and reader.digest != diff_ids[idx]:
            raise CorruptBlobError(
                f"layer {descriptor.digest}: diff_id mismatch: "
                f"expected {diff_ids[idx]}, got {reader.digest}"
            )


# ----------------------------------------------------------------------
# Layer generation
# ----------------------------------------------------------------------


def _whiteout_roots(missing: Iterable[str]) -> list[str]:
    """Drop paths whose ancestor is already being whited out."""
    roots: list[str] = []
    for path in sorted(missing):
        if not any(path.startswith(root + "/") for root in roots):
            roots.append(path)
    return roots


def _tarinfo_for(root: str, rel: str, map_options: MapOptions, fs_eval: FsEval) -> tarfile.TarInfo:
    path = os.path.join(root, rel)
    st = fs_eval.lstat(path)
    info = tarfile.TarInfo(rel)
    info.mode = stat.S_IMODE(st.st_mode)
    info.uid = to_container(st.st_uid, map_options.uid_mappings)
    info.gid = to_container(st.st_gid, map_options.gid_mappings)
    info.mtime = st.st_mtime
    info.uname = info.gname = ""
    fmt = stat.S_IFMT(st.st_mode)
    if fmt == stat.S_IFREG:
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    elif fmt == stat.S_IFDIR:
        info.type = tarfile.DIRTYPE
    elif fmt == stat.S_IFLNK:
        info.type = tarfile.SYMTYPE
        info.linkname = fs_eval.readlink(path)
    elif fmt in (stat.S_IFCHR, stat.S_IFBLK):
        info.type = tarfile.CHRTYPE if fmt == stat.S_IFCHR else tarfile.BLKTYPE
        info.devmajor = os.major(st.st_rdev)
        info.devminor = os.minor(st.st_rdev)
    elif fmt == stat.S_IFIFO:
        info.type = tarfile.FIFOTYPE
    else:
        raise LayerApplyError(f"generate layer: unsupported file type for {rel!r}")

    pax = {}
    try:
        names = fs_eval.llistxattr(path)
    except OSError as exc:
        if exc.errno != errno.ENOTSUP:
            raise
        names = []
    for name in sorted(names):
        value = fs_eval.lgetxattr(path, name)
        pax[PAX_XATTR_PREFIX + name] = value.decode("utf-8", "surrogateescape")
    info.pax_headers = pax
    return info


def generate_layer(
    root: str,
    diffs: Iterable[Difference],
    map_options: MapOptions | None = None,
    fs_eval: FsEval = DEFAULT_FS_EVAL,
    pipe_depth: int = 16,
) -> BinaryIO:
    """
    Stream an uncompressed layer tar describing *diffs* against *root*.

    Added and modified paths are copied from *root*; removed paths become
    whiteouts. The tar is written by a worker thread; errors surface on the
    returned reader.
    """
    map_options = map_options or MapOptions()
    diffs = sorted(diffs, key=lambda d: d.path)
    reader, writer = pipe(pipe_depth)

    def _produce() -> None:
        try:
            with tarfile.open(fileobj=writer, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                for path in _whiteout_roots(d.path for d in diffs if d.kind == "missing"):
                    parent, base = posixpath.split(path)
                    info = tarfile.TarInfo(posixpath.join(parent, WHITEOUT_PREFIX + base))
                    tar.addfile(info)
                for diff in diffs:
                    if diff.kind == "missing":
                        continue
                    info = _tarinfo_for(root, diff.path, map_options, fs_eval)
                    if info.isreg():
                        with fs_eval.open(os.path.join(root, diff.path), "rb") as fh:
                            tar.addfile(info, fh)
                    else:
                        tar.addfile(info)
        except Exception as exc:
            logger.warning("generate layer: %s", exc)
            writer.close_with_error(exc)
            return
        writer.close()

    threading.Thread(target=_produce, name="generate-layer", daemon=True).start()
    return reader  # type: ignore[return-value]
