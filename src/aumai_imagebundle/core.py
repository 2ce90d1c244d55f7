"""Core logic for aumai-imagebundle."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import __version__, mtree
from .bundle import (
    META_NAME,
    ROOTFS_NAME,
    mtree_name,
    read_bundle_meta,
    read_snapshot,
    write_bundle_meta,
    write_snapshot,
)
from .cas import open_engine
from .compress import Compression, get_compressor, layer_media_type
from .errors import BundleExistsError, CorruptBlobError, NotFoundError
from .fseval import FsEval, fs_eval_for
from .layer import DigestReader, generate_layer, unpack_manifest
from .models import (
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    History,
    ImageConfig,
    Manifest,
    MapOptions,
    UmociMeta,
)

__all__ = [
    "BundleRepacker",
    "BundleUnpacker",
    "ImageInspector",
    "parse_image_ref",
]

logger = logging.getLogger(__name__)


def parse_image_ref(ref: str, default_tag: str = "latest") -> tuple[str, str]:
    """
    Split ``<image-path>[:<tag>]`` into the layout path and the tag.

    A colon followed by something containing ``/`` is part of the path.
    """
    path, sep, tag = ref.rpartition(":")
    if not sep or "/" in tag:
        path, tag = ref, default_tag
    if not path:
        raise ValueError(f"invalid image reference {ref!r}: empty image path")
    if not tag:
        raise ValueError(f"invalid image reference {ref!r}: empty tag")
    return path, tag


class BundleUnpacker:
    """
    Unpacks a tagged image from an OCI layout into a runtime bundle.

    Bundle layout::

        rootfs/                 # the materialised filesystem
        umoci.json              # UmociMeta
        sha256_<hex>.mtree      # snapshot of rootfs right after unpack

    *fs_eval* overrides the filesystem strategy that would otherwise be
    picked from the map options (rootless or not).
    """

    def __init__(self, fs_eval: FsEval | None = None) -> None:
        self._fs_eval = fs_eval

    def unpack(
        self,
        image_path: str,
        tag: str,
        bundle_path: str,
        map_options: MapOptions | None = None,
    ) -> UmociMeta:
        """Unpack *tag* from *image_path* into *bundle_path* and return the bundle metadata."""
        map_options = map_options or MapOptions()
        fs_eval = self._fs_eval or fs_eval_for(map_options)
        logger.debug(
            "parsed mappings: uid=%s gid=%s",
            [str(m) for m in map_options.uid_mappings],
            [str(m) for m in map_options.gid_mappings],
        )

        bundle = Path(bundle_path)
        rootfs = bundle / ROOTFS_NAME

        with open_engine(image_path) as engine:
            from_descriptor = engine.resolve_single(tag)
            manifest = engine.fetch_manifest(from_descriptor)

            mtree_path = bundle / mtree_name(from_descriptor.digest)
            for existing in (bundle / META_NAME, mtree_path, rootfs):
                if os.path.lexists(existing):
                    raise BundleExistsError(f"{existing} already exists")
            bundle.mkdir(parents=True, exist_ok=True)

            logger.debug(
                "unpacking OCI image: image=%s ref=%s bundle=%s rootfs=%s",
                image_path, tag, bundle, ROOTFS_NAME,
            )
            logger.info("unpacking bundle ...")
            unpack_manifest(engine, str(bundle), manifest, map_options, fs_eval)
            logger.info("... done")

        logger.debug("generating mtree manifest %s with keywords %s", mtree_path, mtree.MTREE_KEYWORDS)
        logger.info("computing filesystem manifest ...")
        snapshot = mtree.walk(rootfs, mtree.MTREE_KEYWORDS, fs_eval)
        logger.info("... done")
        write_snapshot(bundle, from_descriptor.digest, snapshot)

        meta = UmociMeta(
            version=__version__,
            from_descriptor=from_descriptor,
            map_options=map_options,
        )
        write_bundle_meta(bundle, meta)
        logger.info("unpacked image bundle: %s", bundle)
        return meta


class BundleRepacker:
    """
    Turns the changes made to an unpacked bundle's rootfs into a new layer.

    The rootfs is compared against the snapshot recorded at unpack time; the
    differences become a layer appended to the original manifest, and the
    resulting manifest is tagged in the image layout.
    """

    def __init__(self, fs_eval: FsEval | None = None, **compressor_options: Any) -> None:
        self._fs_eval = fs_eval
        self._compressor_options = compressor_options

    def repack(
        self,
        image_path: str,
        tag: str,
        bundle_path: str,
        compression: Compression | str = Compression.GZIP,
        created_by: str | None = None,
    ) -> Descriptor:
        """Write a new image tagged *tag* and return its (tagged) manifest descriptor."""
        bundle = Path(bundle_path)
        meta = read_bundle_meta(bundle)
        fs_eval = self._fs_eval or fs_eval_for(meta.map_options)
        rootfs = bundle / ROOTFS_NAME

        baseline = read_snapshot(bundle, meta.from_descriptor.digest)
        logger.info("computing filesystem diff ...")
        current = mtree.walk(rootfs, baseline.keywords, fs_eval)
        diffs = mtree.compare(baseline, current)
        logger.info("... done (%d changed paths)", len(diffs))

        compressor = get_compressor(compression, **self._compressor_options)
        with open_engine(image_path) as engine:
            manifest = engine.fetch_manifest(meta.from_descriptor)
            config = engine.fetch_config(manifest.config)

            layer = DigestReader(generate_layer(str(rootfs), diffs, meta.map_options, fs_eval))
            compressed = compressor.compress(layer)  # type: ignore[arg-type]
            try:
                digest, size = engine.put_blob(compressed)
            finally:
                # Closing both ends stops the compressor and the tar producer.
                compressed.close()
                layer.close()
            layer_descriptor = Descriptor(
                media_type=layer_media_type(compressor.algorithm),
                digest=digest,
                size=size,
            )
            logger.debug(
                "generated layer %s (diff_id %s, %d bytes uncompressed)",
                digest, layer.digest, compressor.bytes_read(),
            )

            now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            new_config = config.model_copy(deep=True)
            new_config.created = now
            new_config.rootfs.diff_ids.append(layer.digest)
            new_config.history = [
                *(new_config.history or []),
                History(created=now, created_by=created_by or f"aumai-imagebundle repack {__version__}"),
            ]
            config_descriptor = engine.put_json(MEDIA_TYPE_IMAGE_CONFIG, new_config)

            new_manifest = Manifest(
                config=config_descriptor,
                layers=[*manifest.layers, layer_descriptor],
                annotations=manifest.annotations,
            )
            manifest_descriptor = engine.put_json(MEDIA_TYPE_IMAGE_MANIFEST, new_manifest)
            tagged = engine.update_reference(tag, manifest_descriptor)

        logger.info("created new image %s as %s", tagged.digest, tag)
        return tagged


class ImageInspector:
    """Read-only views of an image in a layout."""

    def inspect(self, image_path: str, tag: str) -> tuple[Descriptor, Manifest, ImageConfig]:
        with open_engine(image_path) as engine:
            descriptor = engine.resolve_single(tag)
            manifest = engine.fetch_manifest(descriptor)
            config = engine.fetch_config(manifest.config)
        return descriptor, manifest, config

    def verify_layers(self, image_path: str, tag: str) -> list[tuple[str, bool]]:
        """
        Verify the digest of every layer blob of *tag*.

        Returns a list of (digest, is_valid) tuples. A layer is valid
        if its blob exists and hashes to its digest.
        """
        results: list[tuple[str, bool]] = []
        with open_engine(image_path) as engine:
            manifest = engine.fetch_manifest(engine.resolve_single(tag))
            for descriptor in manifest.layers:
                try:
                    engine.fetch_blob(descriptor).close()
                except (CorruptBlobError, NotFoundError) as exc:
                    logger.warning("layer %s failed verification: %s", descriptor.digest, exc)
                    results.append((descriptor.digest, False))
                else:
                    results.append((descriptor.digest, True))
        return results
