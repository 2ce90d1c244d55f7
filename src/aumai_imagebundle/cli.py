"""CLI entry point for aumai-imagebundle."""

from __future__ import annotations

import logging
import sys
from typing import NoReturn

import click

from . import __version__
from .compress import Compression
from .config import get_settings
from .core import BundleRepacker, BundleUnpacker, ImageInspector, parse_image_ref
from .errors import ImageBundleError
from .idtools import build_map_options

_COMPRESSION_NAMES = {
    "gzip": Compression.GZIP,
    "zstd": Compression.ZSTD,
    "none": Compression.NONE,
}


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _image_ref(image_ref: str) -> tuple[str, str]:
    try:
        return parse_image_ref(image_ref, get_settings().default_tag)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--image") from exc


@click.group()
@click.version_option(version=__version__, prog_name="aumai-imagebundle")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity (defaults to AUMAI_IMAGEBUNDLE_LOG_LEVEL or WARNING).",
)
def main(log_level: str | None) -> None:
    """AumAI ImageBundle: unpack and repack OCI images as runtime bundles."""
    logging.basicConfig(
        level=(log_level or get_settings().log_level).upper(),
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command("unpack")
@click.option(
    "--image",
    "image_ref",
    required=True,
    help="Image to unpack, as <image-path>[:<tag>].",
)
@click.option(
    "--uid-map",
    "uid_maps",
    multiple=True,
    metavar="CONTAINER:HOST:SIZE",
    help="uid mapping to apply (repeatable).",
)
@click.option(
    "--gid-map",
    "gid_maps",
    multiple=True,
    metavar="CONTAINER:HOST:SIZE",
    help="gid mapping to apply (repeatable).",
)
@click.option("--rootless", is_flag=True, help="Enable rootless unpacking support.")
@click.argument("bundle", type=click.Path(file_okay=False))
def unpack_command(
    image_ref: str,
    uid_maps: tuple[str, ...],
    gid_maps: tuple[str, ...],
    rootless: bool,
    bundle: str,
) -> None:
    """Unpack an image reference into an OCI runtime bundle at BUNDLE."""
    if not bundle:
        raise click.BadParameter("bundle path cannot be empty", param_hint="BUNDLE")
    image_path, tag = _image_ref(image_ref)
    try:
        map_options = build_map_options(uid_maps, gid_maps, rootless)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--uid-map/--gid-map") from exc

    try:
        meta = BundleUnpacker().unpack(image_path, tag, bundle, map_options)
    except (ImageBundleError, OSError) as exc:
        _fail(str(exc))

    click.echo(f"Unpacked to: {bundle}")
    click.echo(f"  Image   : {image_path}")
    click.echo(f"  Tag     : {tag}")
    click.echo(f"  Manifest: {meta.from_descriptor.digest}")
    if map_options.rootless:
        click.echo("  Rootless: yes")


@main.command("repack")
@click.option(
    "--image",
    "image_ref",
    required=True,
    help="Where to store the new image, as <image-path>[:<tag>].",
)
@click.option(
    "--compression",
    type=click.Choice(sorted(_COMPRESSION_NAMES)),
    default="gzip",
    show_default=True,
    help="Compression for the new layer.",
)
@click.option("--created-by", default=None, help="History entry for the new layer.")
@click.argument("bundle", type=click.Path(exists=True, file_okay=False))
def repack_command(
    image_ref: str,
    compression: str,
    created_by: str | None,
    bundle: str,
) -> None:
    """Create a new image layer from the changes made to BUNDLE."""
    image_path, tag = _image_ref(image_ref)
    settings = get_settings()
    repacker = BundleRepacker(
        block_size=settings.gzip_block_size,
        concurrency=settings.gzip_concurrency,
        buffer_size=settings.copy_buffer_size,
        pipe_depth=settings.pipe_depth,
    )
    try:
        descriptor = repacker.repack(
            image_path,
            tag,
            bundle,
            compression=_COMPRESSION_NAMES[compression],
            created_by=created_by,
        )
    except (ImageBundleError, OSError) as exc:
        _fail(str(exc))

    click.echo(f"Repacked: {image_path}:{tag}")
    click.echo(f"  Manifest: {descriptor.digest}")
    click.echo(f"  Size    : {descriptor.size} bytes")


@main.command("inspect")
@click.option(
    "--image",
    "image_ref",
    required=True,
    help="Image to inspect, as <image-path>[:<tag>].",
)
def inspect_command(image_ref: str) -> None:
    """Inspect an image and verify its layers without unpacking it."""
    image_path, tag = _image_ref(image_ref)
    inspector = ImageInspector()
    try:
        descriptor, manifest, config = inspector.inspect(image_path, tag)
        verification = inspector.verify_layers(image_path, tag)
    except (ImageBundleError, OSError) as exc:
        _fail(f"inspecting image: {exc}")

    click.echo(f"Manifest : {descriptor.digest}")
    click.echo(f"Config   : {manifest.config.digest}")
    click.echo(f"Platform : {config.os}/{config.architecture}")
    click.echo(f"\nLayers ({len(manifest.layers)}):")
    for layer in manifest.layers:
        size_kb = layer.size / 1024
        click.echo(f"  {layer.media_type:<48}  {size_kb:8.1f} KB  {layer.digest[:23]}...")

    click.echo(f"\nLayer verification ({len(verification)} layers):")
    all_valid = True
    for digest, valid in verification:
        status = "OK" if valid else "FAIL"
        if not valid:
            all_valid = False
        click.echo(f"  {status}  {digest[:30]}...")
    if all_valid:
        click.echo("All layers verified.")
    else:
        click.echo("WARNING: some layers failed verification!", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
