"""Translation of uids and gids between container and host id ranges."""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence

from .errors import IdMappingRangeError
from .models import IdMapping, MapOptions

__all__ = [
    "build_map_options",
    "parse_mapping",
    "rootless_default_mappings",
    "to_container",
    "to_host",
]


def parse_mapping(spec: str) -> IdMapping:
    """
    Parse a ``containerID:hostID[:size]`` mapping string.

    The size defaults to 1 when omitted.
    """
    parts = spec.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid id mapping {spec!r}: expected containerID:hostID[:size]")
    try:
        numbers = [int(part, 10) for part in parts]
    except ValueError as exc:
        raise ValueError(f"invalid id mapping {spec!r}: {exc}") from exc
    if len(numbers) == 2:
        numbers.append(1)
    container_id, host_id, size = numbers
    if container_id < 0 or host_id < 0:
        raise ValueError(f"invalid id mapping {spec!r}: ids must not be negative")
    if size <= 0:
        raise ValueError(f"invalid id mapping {spec!r}: size must be positive")
    return IdMapping(container_id=container_id, host_id=host_id, size=size)


def to_host(container_id: int, mappings: Sequence[IdMapping]) -> int:
    """Map a container-side id to the host, or return it unchanged if *mappings* is empty."""
    if not mappings:
        return container_id
    for mapping in mappings:
        if mapping.container_id <= container_id < mapping.container_id + mapping.size:
            return mapping.host_id + (container_id - mapping.container_id)
    raise IdMappingRangeError(f"container id {container_id} is not covered by any mapping")


def to_container(host_id: int, mappings: Sequence[IdMapping]) -> int:
    """Inverse of :func:`to_host`."""
    if not mappings:
        return host_id
    for mapping in mappings:
        if mapping.host_id <= host_id < mapping.host_id + mapping.size:
            return mapping.container_id + (host_id - mapping.host_id)
    raise IdMappingRangeError(f"host id {host_id} is not covered by any mapping")


def rootless_default_mappings() -> tuple[list[IdMapping], list[IdMapping]]:
    """Map container root onto the invoking user and group."""
    return (
        [IdMapping(container_id=0, host_id=os.geteuid(), size=1)],
        [IdMapping(container_id=0, host_id=os.getegid(), size=1)],
    )


def build_map_options(
    uid_maps: Iterable[str] = (),
    gid_maps: Iterable[str] = (),
    rootless: bool = False,
) -> MapOptions:
    """
    Build ``MapOptions`` from textual mappings.

    In rootless mode a list that was not given explicitly is filled with
    the single-entry default from :func:`rootless_default_mappings`.
    """
    uid_mappings = [parse_mapping(spec) for spec in uid_maps]
    gid_mappings = [parse_mapping(spec) for spec in gid_maps]
    if rootless:
        default_uids, default_gids = rootless_default_mappings()
        uid_mappings = uid_mappings or default_uids
        gid_mappings = gid_mappings or default_gids
    return MapOptions(
        rootless=rootless,
        uid_mappings=uid_mappings,
        gid_mappings=gid_mappings,
    )
