"""
Content-addressable store backed by an OCI image layout directory.

Layout::

    oci-layout              # {"imageLayoutVersion": "1.0.0"}
    index.json              # top-level Index, tags live in annotations
    blobs/<alg>/<hex>       # blob content, named by its digest
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from pydantic import BaseModel, ValidationError

from .errors import (
    AmbiguousReferenceError,
    CorruptBlobError,
    EngineClosedError,
    InvalidLayoutError,
    NotFoundError,
    UnsupportedMediaTypeError,
)
from .models import (
    ANNOTATION_REF_NAME,
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    ImageConfig,
    Index,
    Manifest,
)

__all__ = [
    "Blob",
    "Engine",
    "create_layout",
    "open_engine",
]

logger = logging.getLogger(__name__)

_LAYOUT_FILENAME = "oci-layout"
_INDEX_FILENAME = "index.json"
_BLOBS_DIR = "blobs"
_LAYOUT_VERSION = "1.0.0"
_STAGING_PREFIX = ".aumai-imagebundle-"
_CHUNK_SIZE = 65536

_DECODERS: dict[str, type[BaseModel]] = {
    MEDIA_TYPE_IMAGE_MANIFEST: Manifest,
    MEDIA_TYPE_IMAGE_INDEX: Index,
    MEDIA_TYPE_IMAGE_CONFIG: ImageConfig,
}


@dataclass
class Blob:
    """A verified blob: its descriptor, decoded value (if any) and an open stream."""

    descriptor: Descriptor
    data: Any
    stream: BinaryIO

    @property
    def media_type(self) -> str:
        return self.descriptor.media_type

    def close(self) -> None:
        self.stream.close()

    def __enter__(self) -> Blob:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def create_layout(path: str | os.PathLike[str]) -> None:
    """Create an empty OCI image layout at *path* (which must not exist yet)."""
    root = Path(path)
    root.mkdir(parents=True)
    (root / _BLOBS_DIR / "sha256").mkdir(parents=True)
    (root / _LAYOUT_FILENAME).write_text(
        json.dumps({"imageLayoutVersion": _LAYOUT_VERSION}), encoding="utf-8"
    )
    (root / _INDEX_FILENAME).write_text(
        Index().model_dump_json(by_alias=True, exclude_none=True), encoding="utf-8"
    )


def open_engine(path: str | os.PathLike[str]) -> Engine:
    """Open the image layout at *path*. The caller must close the engine."""
    return Engine(path)


class Engine:
    """
    Handle on an OCI image layout.

    Opening validates the layout. The first write creates a private staging
    directory inside it; :meth:`close` removes it. Use as a context
    manager so that happens on every exit path.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._validate()
        self._closed = False
        self._staging: Path | None = None
        logger.debug("opened image layout %s", self.path)

    def _validate(self) -> None:
        if not self.path.exists():
            raise NotFoundError(f"image layout {str(self.path)!r} does not exist")
        if not self.path.is_dir():
            raise InvalidLayoutError(f"image layout {str(self.path)!r} is not a directory")
        layout_file = self.path / _LAYOUT_FILENAME
        try:
            layout = json.loads(layout_file.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise InvalidLayoutError(f"{str(self.path)!r}: missing {_LAYOUT_FILENAME}") from exc
        except json.JSONDecodeError as exc:
            raise InvalidLayoutError(f"{str(self.path)!r}: invalid {_LAYOUT_FILENAME}: {exc}") from exc
        if not isinstance(layout, dict) or layout.get("imageLayoutVersion") != _LAYOUT_VERSION:
            raise InvalidLayoutError(
                f"{str(self.path)!r}: unsupported image layout version "
                f"{layout.get('imageLayoutVersion') if isinstance(layout, dict) else layout!r}"
            )
        if not (self.path / _INDEX_FILENAME).is_file():
            raise InvalidLayoutError(f"{str(self.path)!r}: missing {_INDEX_FILENAME}")
        if not (self.path / _BLOBS_DIR).is_dir():
            raise InvalidLayoutError(f"{str(self.path)!r}: missing {_BLOBS_DIR}/ directory")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            if self._staging is not None:
                shutil.rmtree(self._staging, ignore_errors=True)
                self._staging = None
            self._closed = True
            logger.debug("closed image layout %s", self.path)

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise EngineClosedError(f"engine for {str(self.path)!r} is closed")

    def _staging_dir(self) -> Path:
        self._check_open()
        if self._staging is None:
            self._staging = Path(tempfile.mkdtemp(prefix=_STAGING_PREFIX, dir=self.path))
        return self._staging

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def get_index(self) -> Index:
        self._check_open()
        raw = (self.path / _INDEX_FILENAME).read_bytes()
        try:
            return Index.model_validate_json(raw)
        except ValidationError as exc:
            raise InvalidLayoutError(f"{str(self.path)!r}: invalid {_INDEX_FILENAME}: {exc}") from exc

    def put_index(self, index: Index) -> None:
        staging = self._staging_dir()
        tmp = staging / _INDEX_FILENAME
        tmp.write_text(index.model_dump_json(by_alias=True, exclude_none=True), encoding="utf-8")
        os.replace(tmp, self.path / _INDEX_FILENAME)

    def list_references(self) -> list[str]:
        names = [d.ref_name for d in self.get_index().manifests if d.ref_name]
        return sorted(set(names))

    def resolve_reference(self, name: str) -> list[Descriptor]:
        """
        Return every distinct descriptor tagged *name* in ``index.json``.

        Raises ``NotFoundError`` if there is none. Callers that need a single
        image must reject more than one result (see :meth:`resolve_single`).
        """
        found: list[Descriptor] = []
        for descriptor in self.get_index().manifests:
            if descriptor.ref_name == name and descriptor not in found:
                found.append(descriptor)
        if not found:
            raise NotFoundError(f"reference {name!r} not found in {str(self.path)!r}")
        logger.debug("resolved reference %s to %d descriptor(s)", name, len(found))
        return found

    def resolve_single(self, name: str) -> Descriptor:
        descriptors = self.resolve_reference(name)
        if len(descriptors) != 1:
            raise AmbiguousReferenceError(
                f"tag is ambiguous: {name!r} resolves to "
                + ", ".join(d.digest for d in descriptors)
            )
        return descriptors[0]

    def update_reference(self, name: str, descriptor: Descriptor) -> Descriptor:
        """Point tag *name* at *descriptor*, replacing any previous entries."""
        annotations = dict(descriptor.annotations or {})
        annotations[ANNOTATION_REF_NAME] = name
        tagged = descriptor.model_copy(update={"annotations": annotations})
        index = self.get_index()
        index.manifests = [d for d in index.manifests if d.ref_name != name]
        index.manifests.append(tagged)
        self.put_index(index)
        logger.debug("tagged %s as %s", descriptor.digest, name)
        return tagged

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def blob_path(self, digest: str) -> Path:
        algorithm, _, encoded = digest.partition(":")
        if not encoded or "/" in encoded or "/" in algorithm:
            raise ValueError(f"invalid digest {digest!r}")
        return self.path / _BLOBS_DIR / algorithm / encoded

    def fetch_blob(self, descriptor: Descriptor) -> Blob:
        """
        Open the blob for *descriptor* after verifying its digest and size.

        Manifests, indexes and image configs are also decoded into ``Blob.data``.
        """
        self._check_open()
        path = self.blob_path(descriptor.digest)
        try:
            stream = open(path, "rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"blob {descriptor.digest} not found") from exc
        try:
            hasher = hashlib.new(descriptor.algorithm)
            size = 0
            for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
                hasher.update(chunk)
                size += len(chunk)
            actual = f"{descriptor.algorithm}:{hasher.hexdigest()}"
            if actual != descriptor.digest:
                raise CorruptBlobError(
                    f"blob {descriptor.digest} is corrupt: content hashes to {actual}"
                )
            if size != descriptor.size:
                raise CorruptBlobError(
                    f"blob {descriptor.digest} is corrupt: expected {descriptor.size} bytes, found {size}"
                )
            stream.seek(0)
            data = None
            decoder = _DECODERS.get(descriptor.media_type)
            if decoder is not None:
                try:
                    data = decoder.model_validate_json(stream.read())
                except ValidationError as exc:
                    raise CorruptBlobError(
                        f"blob {descriptor.digest}: cannot decode {descriptor.media_type}: {exc}"
                    ) from exc
                stream.seek(0)
        except BaseException:
            stream.close()
            raise
        return Blob(descriptor=descriptor, data=data, stream=stream)

    def fetch_manifest(self, descriptor: Descriptor) -> Manifest:
        """Fetch an image manifest; anything else (e.g. an index) is unsupported."""
        if descriptor.media_type != MEDIA_TYPE_IMAGE_MANIFEST:
            raise UnsupportedMediaTypeError(
                f"descriptor {descriptor.digest} does not point to an image manifest: "
                f"not implemented: {descriptor.media_type}"
            )
        with self.fetch_blob(descriptor) as blob:
            return blob.data

    def fetch_config(self, descriptor: Descriptor) -> ImageConfig:
        if descriptor.media_type != MEDIA_TYPE_IMAGE_CONFIG:
            raise UnsupportedMediaTypeError(
                f"descriptor {descriptor.digest} is not an image config: {descriptor.media_type}"
            )
        with self.fetch_blob(descriptor) as blob:
            return blob.data

    def put_blob(self, reader: BinaryIO) -> tuple[str, int]:
        """Store the content of *reader*, returning its ``(digest, size)``."""
        staging = self._staging_dir()
        hasher = hashlib.sha256()
        size = 0
        with tempfile.NamedTemporaryFile(dir=staging, delete=False) as tmp:
            try:
                for chunk in iter(lambda: reader.read(_CHUNK_SIZE), b""):
                    hasher.update(chunk)
                    tmp.write(chunk)
                    size += len(chunk)
            except BaseException:
                tmp.close()
                os.unlink(tmp.name)
                raise
        digest = f"sha256:{hasher.hexdigest()}"
        target = self.blob_path(digest)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(tmp.name, target)
        logger.debug("stored blob %s (%d bytes)", digest, size)
        return digest, size

    def put_json(self, media_type: str, value: BaseModel) -> Descriptor:
        """Serialise *value* and store it as a blob of *media_type*."""
        data = value.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
        staging = self._staging_dir()
        hasher = hashlib.sha256(data)
        digest = f"sha256:{hasher.hexdigest()}"
        target = self.blob_path(digest)
        if not target.exists():
            tmp = staging / digest.replace(":", "_")
            tmp.write_bytes(data)
            os.replace(tmp, target)
        return Descriptor(media_type=media_type, digest=digest, size=len(data))
