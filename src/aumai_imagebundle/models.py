"""Pydantic models for aumai-imagebundle."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

__all__ = [
    "ANNOTATION_REF_NAME",
    "Descriptor",
    "History",
    "IdMapping",
    "ImageConfig",
    "Index",
    "Manifest",
    "MapOptions",
    "MEDIA_TYPE_IMAGE_CONFIG",
    "MEDIA_TYPE_IMAGE_INDEX",
    "MEDIA_TYPE_IMAGE_LAYER",
    "MEDIA_TYPE_IMAGE_LAYER_GZIP",
    "MEDIA_TYPE_IMAGE_LAYER_ZSTD",
    "MEDIA_TYPE_IMAGE_MANIFEST",
    "RootFS",
    "UmociMeta",
]

MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_IMAGE_LAYER_GZIP = MEDIA_TYPE_IMAGE_LAYER + "+gzip"
MEDIA_TYPE_IMAGE_LAYER_ZSTD = MEDIA_TYPE_IMAGE_LAYER + "+zstd"

ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"

_DIGEST_RE = re.compile(r"^(?P<algorithm>sha256|sha512):(?P<hex>[a-f0-9]+)$")
_DIGEST_HEX_LENGTH = {"sha256": 64, "sha512": 128}


class Descriptor(BaseModel):
    """
    Reference to a blob in the store.

    Two descriptors are equal when their digests are equal; media type and
    size are properties of the blob, not of its identity.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int = Field(ge=0)
    annotations: dict[str, str] | None = None
    urls: list[str] | None = None
    platform: dict[str, Any] | None = None

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        match = _DIGEST_RE.match(value)
        if match is None:
            raise ValueError(f"invalid digest {value!r}")
        if len(match["hex"]) != _DIGEST_HEX_LENGTH[match["algorithm"]]:
            raise ValueError(f"invalid digest length {value!r}")
        return value

    @property
    def algorithm(self) -> str:
        return self.digest.split(":", 1)[0]

    @property
    def encoded(self) -> str:
        """Hex part of the digest."""
        return self.digest.split(":", 1)[1]

    @property
    def ref_name(self) -> str | None:
        return (self.annotations or {}).get(ANNOTATION_REF_NAME)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Descriptor):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)


class Manifest(BaseModel):
    """
    OCI Image Manifest (schema version 2).

    Follows the OCI Image Manifest Specification
    https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str | None = Field(default=MEDIA_TYPE_IMAGE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


class Index(BaseModel):
    """OCI Image Index, used both for ``index.json`` and nested indexes."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str | None = Field(default=MEDIA_TYPE_IMAGE_INDEX, alias="mediaType")
    manifests: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


class RootFS(BaseModel):
    type: str = "layers"
    diff_ids: list[str] = Field(default_factory=list)


class History(BaseModel):
    model_config = ConfigDict(extra="allow")

    created: str | None = None
    created_by: str | None = None
    author: str | None = None
    comment: str | None = None
    empty_layer: bool | None = None


class ImageConfig(BaseModel):
    """OCI image configuration. Unknown fields survive a load/dump cycle."""

    model_config = ConfigDict(extra="allow")

    created: str | None = None
    author: str | None = None
    architecture: str = "amd64"
    os: str = "linux"
    config: dict[str, Any] | None = None
    rootfs: RootFS = Field(default_factory=RootFS)
    history: list[History] | None = None


class IdMapping(BaseModel):
    """A contiguous range of ids mapped from the container to the host."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    container_id: int = Field(alias="containerID", ge=0)
    host_id: int = Field(alias="hostID", ge=0)
    size: int = Field(gt=0)

    def __str__(self) -> str:
        return f"{self.container_id}:{self.host_id}:{self.size}"


class MapOptions(BaseModel):
    """User and group mappings applied when unpacking and repacking."""

    model_config = ConfigDict(frozen=True)

    rootless: bool = False
    uid_mappings: list[IdMapping] = Field(default_factory=list)
    gid_mappings: list[IdMapping] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_overlap(self) -> MapOptions:
        for kind, mappings in (("uid", self.uid_mappings), ("gid", self.gid_mappings)):
            ranges = sorted(mappings, key=lambda m: m.container_id)
            for prev, cur in zip(ranges, ranges[1:]):
                if cur.container_id < prev.container_id + prev.size:
                    raise ValueError(f"overlapping {kind} mappings: {prev} and {cur}")
        return self


class UmociMeta(BaseModel):
    """Metadata stored alongside an unpacked bundle as ``umoci.json``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: str = Field(alias="umoci_version")
    from_descriptor: Descriptor = Field(alias="from")
    map_options: MapOptions = Field(default_factory=MapOptions)
