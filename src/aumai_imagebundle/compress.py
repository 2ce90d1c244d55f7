"""
Streaming layer compression.

``compress`` hands back the readable end of a pipe straight away while a
worker thread copies the input through the compressor, so compression
overlaps with whatever produces the input and whatever consumes the output.
"""

from __future__ import annotations

import collections
import enum
import functools
import gzip
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, BinaryIO

import zstandard

from .errors import CompressionError, UnsupportedMediaTypeError
from .models import MEDIA_TYPE_IMAGE_LAYER
from .pipe import PipeWriter, pipe

__all__ = [
    "Compression",
    "Compressor",
    "GzipCompressor",
    "NoopCompressor",
    "ZstdCompressor",
    "compression_for_media_type",
    "get_compressor",
    "layer_media_type",
]

logger = logging.getLogger(__name__)

_DEFAULT_BUFFER_SIZE = 64 << 10
_DEFAULT_PIPE_DEPTH = 16

_DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar"
_NONDISTRIBUTABLE_LAYER = "application/vnd.oci.image.layer.nondistributable.v1.tar"
_LAYER_BASES = (MEDIA_TYPE_IMAGE_LAYER, _NONDISTRIBUTABLE_LAYER)


class Compression(str, enum.Enum):
    """The compression algorithms a layer blob may use."""

    NONE = ""
    GZIP = "gzip"
    ZSTD = "zstd"


class Compressor:
    """Base class: ``compress``/``decompress`` plus the input byte count."""

    algorithm: Compression

    def __init__(
        self,
        *,
        buffer_size: int = _DEFAULT_BUFFER_SIZE,
        pipe_depth: int = _DEFAULT_PIPE_DEPTH,
    ) -> None:
        self._buffer_size = buffer_size
        self._pipe_depth = pipe_depth
        self._bytes_read = 0

    def compress(self, reader: BinaryIO) -> BinaryIO:
        raise NotImplementedError

    def decompress(self, reader: BinaryIO) -> BinaryIO:
        raise NotImplementedError

    def media_type_suffix(self) -> str:
        return self.algorithm.value

    def bytes_read(self) -> int:
        """
        Uncompressed bytes consumed by the last :meth:`compress` call.

        The count is only final once the output has been read to the end;
        before that it may be stale.
        """
        return self._bytes_read


class NoopCompressor(Compressor):
    """Passes data through untouched."""

    algorithm = Compression.NONE

    def compress(self, reader: BinaryIO) -> BinaryIO:
        return reader

    def decompress(self, reader: BinaryIO) -> BinaryIO:
        return reader

    def bytes_read(self) -> int:
        return -1


class _StreamingCompressor(Compressor):
    def _open_writer(self, sink: PipeWriter) -> Any:
        raise NotImplementedError

    def _abort_writer(self, writer: Any) -> None:
        pass

    def compress(self, reader: BinaryIO) -> BinaryIO:
        out_reader, out_writer = pipe(self._pipe_depth)
        worker = threading.Thread(
            target=self._run,
            args=(reader, out_writer),
            name=f"{self.algorithm.value}-compress",
            daemon=True,
        )
        worker.start()
        return out_reader  # type: ignore[return-value]

    def _run(self, reader: BinaryIO, sink: PipeWriter) -> None:
        name = self.algorithm.value
        total = 0
        writer = None
        try:
            # Opened here: writing the stream header may already block on the pipe.
            writer = self._open_writer(sink)
            while True:
                chunk = reader.read(self._buffer_size)
                if not chunk:
                    break
                writer.write(chunk)
                total += len(chunk)
        except Exception as exc:
            logger.warning("%s compress: could not compress layer: %s", name, exc)
            sink.close_with_error(_wrap(f"compressing layer: {exc}", exc))
            if writer is not None:
                self._abort_writer(writer)
            return
        self._bytes_read = total
        try:
            writer.close()
        except Exception as exc:
            logger.warning("%s compress: could not close %s writer: %s", name, name, exc)
            sink.close_with_error(_wrap(f"close {name} writer: {exc}", exc))
            return
        sink.close()


def _wrap(message: str, cause: BaseException) -> CompressionError:
    error = CompressionError(message)
    error.__cause__ = cause
    return error


class _BlockGzipWriter:
    """
    Gzip writer that compresses fixed-size blocks on a thread pool.

    Every block becomes its own gzip member; members are written to *sink*
    in input order, and ``gzip`` readers treat the concatenation as a single
    stream. At most ``concurrency`` blocks are in flight at once.
    """

    def __init__(self, sink: PipeWriter, block_size: int, concurrency: int, level: int) -> None:
        self._sink = sink
        self._block_size = block_size
        self._max_pending = concurrency
        self._compress = functools.partial(gzip.compress, compresslevel=level, mtime=0)
        self._pool = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="gzip-block")
        self._pending: collections.deque[Future[bytes]] = collections.deque()
        self._buffer = bytearray()
        self._submitted = False

    def write(self, data: bytes) -> int:
        self._buffer += data
        while len(self._buffer) >= self._block_size:
            block = bytes(self._buffer[: self._block_size])
            del self._buffer[: self._block_size]
            self._submit(block)
        return len(data)

    def _submit(self, block: bytes) -> None:
        self._pending.append(self._pool.submit(self._compress, block))
        self._submitted = True
        while len(self._pending) > self._max_pending:
            self._sink.write(self._pending.popleft().result())

    def close(self) -> None:
        try:
            # An empty input still yields one (empty) member.
            if self._buffer or not self._submitted:
                self._submit(bytes(self._buffer))
                self._buffer.clear()
            while self._pending:
                self._sink.write(self._pending.popleft().result())
        finally:
            self._pool.shutdown(wait=False, cancel_futures=True)

    def abort(self) -> None:
        self._pending.clear()
        self._pool.shutdown(wait=False, cancel_futures=True)


class GzipCompressor(_StreamingCompressor):
    """Parallel gzip; blocks of ``block_size`` bytes compressed on ``concurrency`` threads."""

    algorithm = Compression.GZIP

    def __init__(
        self,
        *,
        block_size: int = 256 << 10,
        concurrency: int | None = None,
        level: int = 6,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self._block_size = block_size
        self._concurrency = concurrency or 2 * (os.cpu_count() or 1)
        self._level = level

    def _open_writer(self, sink: PipeWriter) -> _BlockGzipWriter:
        return _BlockGzipWriter(sink, self._block_size, self._concurrency, self._level)

    def _abort_writer(self, writer: _BlockGzipWriter) -> None:
        writer.abort()

    def decompress(self, reader: BinaryIO) -> BinaryIO:
        return gzip.GzipFile(fileobj=reader, mode="rb")  # type: ignore[return-value]


class ZstdCompressor(_StreamingCompressor):
    algorithm = Compression.ZSTD

    def _open_writer(self, sink: PipeWriter) -> BinaryIO:
        return zstandard.ZstdCompressor().stream_writer(sink, closefd=False)

    def decompress(self, reader: BinaryIO) -> BinaryIO:
        return zstandard.ZstdDecompressor().stream_reader(reader, read_across_frames=True)


_COMPRESSORS: dict[Compression, type[Compressor]] = {
    Compression.NONE: NoopCompressor,
    Compression.GZIP: GzipCompressor,
    Compression.ZSTD: ZstdCompressor,
}


def get_compressor(algorithm: Compression | str, **kwargs) -> Compressor:
    """
    Return a fresh compressor for *algorithm*.

    Keyword arguments are passed to the compressor; options a variant does
    not take (such as gzip's ``block_size`` for zstd) are dropped.
    """
    try:
        compression = Compression(algorithm)
    except ValueError as exc:
        raise UnsupportedMediaTypeError(f"unknown compression {algorithm!r}") from exc
    if compression is not Compression.GZIP:
        kwargs.pop("block_size", None)
        kwargs.pop("concurrency", None)
        kwargs.pop("level", None)
    return _COMPRESSORS[compression](**kwargs)


def compression_for_media_type(media_type: str) -> Compression:
    """Work out the compression of a layer blob from its media type."""
    if media_type in _LAYER_BASES or media_type == _DOCKER_LAYER:
        return Compression.NONE
    if media_type == _DOCKER_LAYER + ".gzip":
        return Compression.GZIP
    base, _, suffix = media_type.rpartition("+")
    if base in _LAYER_BASES and suffix in (Compression.GZIP.value, Compression.ZSTD.value):
        return Compression(suffix)
    raise UnsupportedMediaTypeError(f"unsupported layer media type {media_type!r}")


def layer_media_type(compression: Compression) -> str:
    """Inverse of :func:`compression_for_media_type` for OCI layers."""
    if compression is Compression.NONE:
        return MEDIA_TYPE_IMAGE_LAYER
    return f"{MEDIA_TYPE_IMAGE_LAYER}+{compression.value}"
