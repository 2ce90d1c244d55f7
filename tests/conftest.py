"""Shared test fixtures for aumai-imagebundle."""

from __future__ import annotations

from pathlib import Path

import pytest

from aumai_imagebundle.config import get_settings
from aumai_imagebundle.core import BundleRepacker, BundleUnpacker, ImageInspector
from aumai_imagebundle.models import Descriptor
from oci_helpers import (
    build_image,
    dir_entry,
    file_entry,
    make_tar,
    symlink_entry,
    whiteout_entry,
)


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep environment-driven settings from leaking between tests."""
    for name in ("LOG_LEVEL", "DEFAULT_TAG", "PIPE_DEPTH"):
        monkeypatch.delenv(f"AUMAI_IMAGEBUNDLE_{name}", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


@pytest.fixture()
def base_layer() -> bytes:
    return make_tar(
        dir_entry("etc"),
        file_entry("etc/passwd", b"root:x:0:0:root:/root:/bin/sh\n"),
        file_entry("etc/shadow", b"root:*:19000:0:99999:7:::\n", mode=0o600),
        dir_entry("bin"),
        file_entry("bin/sh", b"#!fake shell\n", mode=0o755),
        symlink_entry("bin/bash", "sh"),
        dir_entry("tmp", mode=0o1777),
    )


@pytest.fixture()
def upper_layer() -> bytes:
    return make_tar(
        whiteout_entry("etc/shadow"),
        file_entry("etc/hostname", b"bundle\n"),
    )


# ---------------------------------------------------------------------------
# Image layouts
# ---------------------------------------------------------------------------


@pytest.fixture()
def layout(tmp_path: Path) -> Path:
    return tmp_path / "image"


@pytest.fixture()
def image(layout: Path, base_layer: bytes, upper_layer: bytes) -> Descriptor:
    """A two-layer gzip image tagged ``latest``."""
    return build_image(layout, "latest", [base_layer, upper_layer])


# ---------------------------------------------------------------------------
# Core objects
# ---------------------------------------------------------------------------


@pytest.fixture()
def unpacker() -> BundleUnpacker:
    return BundleUnpacker()


@pytest.fixture()
def repacker() -> BundleRepacker:
    return BundleRepacker(concurrency=2, pipe_depth=4)


@pytest.fixture()
def inspector() -> ImageInspector:
    return ImageInspector()


@pytest.fixture()
def unpacked_bundle(tmp_path: Path, layout: Path, image: Descriptor, unpacker: BundleUnpacker) -> Path:
    """The ``image`` fixture unpacked into ``<tmp>/bundle``."""
    bundle = tmp_path / "bundle"
    unpacker.unpack(str(layout), "latest", str(bundle))
    return bundle
