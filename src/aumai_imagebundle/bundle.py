"""Files an unpack leaves next to the rootfs."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import ValidationError

from .errors import BundleExistsError, ImageBundleError, NotFoundError
from .layer import ROOTFS_NAME
from .models import UmociMeta
from .mtree import Snapshot, parse

__all__ = [
    "META_NAME",
    "MTREE_SUFFIX",
    "ROOTFS_NAME",
    "mtree_name",
    "read_bundle_meta",
    "read_snapshot",
    "write_bundle_meta",
    "write_snapshot",
]

META_NAME = "umoci.json"
MTREE_SUFFIX = ".mtree"


def mtree_name(digest: str) -> str:
    """``sha256:<hex>`` -> ``sha256_<hex>.mtree``."""
    return digest.replace(":", "_", 1) + MTREE_SUFFIX


def _create_exclusive(path: Path, data: str) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError as exc:
        raise BundleExistsError(f"{path} already exists") from exc
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(data)


def write_bundle_meta(bundle: str | os.PathLike[str], meta: UmociMeta) -> Path:
    path = Path(bundle) / META_NAME
    _create_exclusive(path, meta.model_dump_json(by_alias=True, exclude_none=True, indent=2))
    return path


def read_bundle_meta(bundle: str | os.PathLike[str]) -> UmociMeta:
    path = Path(bundle) / META_NAME
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise NotFoundError(f"{path} not found: is {str(bundle)!r} an unpacked bundle?") from exc
    try:
        return UmociMeta.model_validate_json(raw)
    except ValidationError as exc:
        raise ImageBundleError(f"invalid bundle metadata {path}: {exc}") from exc


def write_snapshot(bundle: str | os.PathLike[str], digest: str, snapshot: Snapshot) -> Path:
    path = Path(bundle) / mtree_name(digest)
    _create_exclusive(path, snapshot.dumps())
    return path


def read_snapshot(bundle: str | os.PathLike[str], digest: str) -> Snapshot:
    path = Path(bundle) / mtree_name(digest)
    try:
        with open(path, encoding="utf-8") as fh:
            return parse(fh)
    except FileNotFoundError as exc:
        raise NotFoundError(f"snapshot {path} not found") from exc
