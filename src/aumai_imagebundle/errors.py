"""Exception hierarchy for aumai-imagebundle."""

from __future__ import annotations

__all__ = [
    "AmbiguousReferenceError",
    "BundleExistsError",
    "CompressionError",
    "CorruptBlobError",
    "EngineClosedError",
    "IdMappingRangeError",
    "ImageBundleError",
    "InvalidLayoutError",
    "LayerApplyError",
    "NotFoundError",
    "SnapshotError",
    "UnsupportedMediaTypeError",
]


class ImageBundleError(Exception):
    """Base class for every error raised by this package."""


class NotFoundError(ImageBundleError, LookupError):
    """A reference, blob or layout does not exist."""


class InvalidLayoutError(ImageBundleError):
    """The directory is not a valid OCI image layout."""


class EngineClosedError(ImageBundleError, RuntimeError):
    """An operation was attempted on a closed engine."""


class AmbiguousReferenceError(ImageBundleError):
    """A reference name resolves to more than one descriptor."""


class UnsupportedMediaTypeError(ImageBundleError):
    """A blob has a media type this package does not handle."""


class CorruptBlobError(ImageBundleError):
    """A stored blob does not hash to the digest it is addressed by."""


class CompressionError(ImageBundleError):
    """The background compression worker failed."""


class LayerApplyError(ImageBundleError, OSError):
    """A filesystem operation failed while applying a layer."""


class SnapshotError(ImageBundleError, OSError):
    """A filesystem operation failed while walking or comparing a snapshot."""


class IdMappingRangeError(ImageBundleError, ValueError):
    """An id is not covered by any configured mapping range."""


class BundleExistsError(ImageBundleError, FileExistsError):
    """Bundle metadata, snapshot or rootfs is already present."""
