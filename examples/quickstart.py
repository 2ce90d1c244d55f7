"""
aumai-imagebundle quickstart: build, inspect, unpack, repack and verify an image.

Run directly:

    python examples/quickstart.py

All demos work inside a temporary directory that is removed at the end.
"""

from __future__ import annotations

import io
import pathlib
import tarfile
import tempfile


# ---------------------------------------------------------------------------
# Demo 1: Build a small image in a fresh OCI layout
# ---------------------------------------------------------------------------

def demo_build_image(layout: pathlib.Path) -> None:
    """Write a one-layer image tagged ``latest`` into *layout*."""
    print("\n=== Demo 1: Build an image ===")

    import hashlib

    from aumai_imagebundle.cas import create_layout, open_engine
    from aumai_imagebundle.compress import Compression, get_compressor, layer_media_type
    from aumai_imagebundle.models import (
        MEDIA_TYPE_IMAGE_CONFIG,
        MEDIA_TYPE_IMAGE_MANIFEST,
        Descriptor,
        ImageConfig,
        Manifest,
        RootFS,
    )

    # An uncompressed layer tar with a directory and two files
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        etc = tarfile.TarInfo("etc")
        etc.type = tarfile.DIRTYPE
        etc.mode = 0o755
        tar.addfile(etc)
        for name, data in (("etc/hostname", b"quickstart\n"), ("etc/motd", b"hello\n")):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    raw = buf.getvalue()

    create_layout(layout)
    compressor = get_compressor(Compression.GZIP)
    with open_engine(layout) as engine:
        digest, size = engine.put_blob(compressor.compress(io.BytesIO(raw)))
        layer = Descriptor(media_type=layer_media_type(Compression.GZIP), digest=digest, size=size)

        config = ImageConfig(rootfs=RootFS(diff_ids=["sha256:" + hashlib.sha256(raw).hexdigest()]))
        config_descriptor = engine.put_json(MEDIA_TYPE_IMAGE_CONFIG, config)
        manifest = Manifest(config=config_descriptor, layers=[layer])
        tagged = engine.update_reference(
            "latest", engine.put_json(MEDIA_TYPE_IMAGE_MANIFEST, manifest)
        )

    print(f"  Layout   : {layout}")
    print(f"  Layer    : {digest[:30]}... ({size} bytes gzip, {len(raw)} bytes tar)")
    print(f"  Manifest : {tagged.digest[:30]}... tagged latest")


# ---------------------------------------------------------------------------
# Demo 2: Inspect and verify
# ---------------------------------------------------------------------------

def demo_inspect(layout: pathlib.Path, tag: str) -> None:
    """Show the manifest of *tag* and verify every layer blob."""
    print(f"\n=== Demo 2: Inspect {tag} ===")

    from aumai_imagebundle.core import ImageInspector

    inspector = ImageInspector()
    descriptor, manifest, config = inspector.inspect(str(layout), tag)
    print(f"  Platform : {config.os}/{config.architecture}")
    print(f"  Layers ({len(manifest.layers)}):")
    for layer in manifest.layers:
        print(f"    {layer.media_type:<48}  {layer.size:6d} B  {layer.digest[:30]}...")

    for digest, valid in inspector.verify_layers(str(layout), tag):
        print(f"  {'OK  ' if valid else 'FAIL'}  {digest[:40]}...")


# ---------------------------------------------------------------------------
# Demo 3: Unpack into a runtime bundle
# ---------------------------------------------------------------------------

def demo_unpack(layout: pathlib.Path, bundle: pathlib.Path) -> None:
    """Unpack ``latest`` rootlessly and list what landed in the bundle."""
    print("\n=== Demo 3: Unpack ===")

    from aumai_imagebundle.core import BundleUnpacker
    from aumai_imagebundle.idtools import build_map_options

    meta = BundleUnpacker().unpack(
        str(layout), "latest", str(bundle), build_map_options(rootless=True)
    )
    print(f"  Bundle   : {bundle}")
    print(f"  From     : {meta.from_descriptor.digest[:30]}...")
    print(f"  Entries  : {sorted(p.name for p in bundle.iterdir())}")
    rootfs = bundle / "rootfs"
    for path in sorted(rootfs.rglob("*")):
        print(f"    /{path.relative_to(rootfs)}")


# ---------------------------------------------------------------------------
# Demo 4: Change the bundle and repack it as a new tag
# ---------------------------------------------------------------------------

def demo_repack(layout: pathlib.Path, bundle: pathlib.Path) -> None:
    """Edit the rootfs, then record the changes as a new layer tagged ``v2``."""
    print("\n=== Demo 4: Repack ===")

    from aumai_imagebundle.compress import Compression
    from aumai_imagebundle.core import BundleRepacker

    rootfs = bundle / "rootfs"
    (rootfs / "etc" / "motd").unlink()
    (rootfs / "etc" / "hostname").write_text("changed\n", encoding="utf-8")
    print("  Removed /etc/motd, rewrote /etc/hostname")

    descriptor = BundleRepacker().repack(
        str(layout), "v2", str(bundle), compression=Compression.ZSTD, created_by="quickstart"
    )
    print(f"  New manifest : {descriptor.digest[:30]}... tagged v2")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("aumai-imagebundle quickstart demo")
    print("=" * 40)

    with tempfile.TemporaryDirectory() as tmp:
        layout = pathlib.Path(tmp) / "image"
        bundle = pathlib.Path(tmp) / "bundle"

        demo_build_image(layout)
        demo_inspect(layout, "latest")
        demo_unpack(layout, bundle)
        demo_repack(layout, bundle)
        demo_inspect(layout, "v2")

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
