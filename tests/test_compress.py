"""Tests for aumai_imagebundle.compress."""

from __future__ import annotations

import gzip
import io
import os
import threading

import pytest

from aumai_imagebundle.compress import (
    Compression,
    GzipCompressor,
    NoopCompressor,
    ZstdCompressor,
    compression_for_media_type,
    get_compressor,
    layer_media_type,
)
from aumai_imagebundle.errors import CompressionError, UnsupportedMediaTypeError

PAYLOAD = b"".join(f"line {i}: some layer content\n".encode() for i in range(20000))


class _FailingReader:
    def __init__(self, good: bytes) -> None:
        self._good = io.BytesIO(good)

    def read(self, size: int = -1) -> bytes:
        data = self._good.read(size)
        if not data:
            raise OSError("disk went away")
        return data


class _EndlessReader:
    def __init__(self) -> None:
        self.reads = 0

    def read(self, size: int = -1) -> bytes:
        self.reads += 1
        return os.urandom(size if size > 0 else 65536)


# ---------------------------------------------------------------------------
# Round trips
# ---------------------------------------------------------------------------


class TestRoundTrip:
    @pytest.mark.parametrize("algorithm", [Compression.GZIP, Compression.ZSTD])
    def test_streaming_variants(self, algorithm: Compression) -> None:
        compressor = get_compressor(algorithm, pipe_depth=2, buffer_size=4096)
        compressed = compressor.compress(io.BytesIO(PAYLOAD)).read()
        assert compressed != PAYLOAD
        assert len(compressed) < len(PAYLOAD)
        assert compressor.bytes_read() == len(PAYLOAD)
        assert compressor.decompress(io.BytesIO(compressed)).read() == PAYLOAD

    def test_gzip_output_is_plain_gzip(self) -> None:
        compressor = GzipCompressor(block_size=64 << 10, concurrency=3)
        compressed = compressor.compress(io.BytesIO(PAYLOAD)).read()
        assert gzip.decompress(compressed) == PAYLOAD

    def test_gzip_small_blocks_keep_order(self) -> None:
        compressor = GzipCompressor(block_size=1000, concurrency=4)
        compressed = compressor.compress(io.BytesIO(PAYLOAD)).read()
        assert gzip.decompress(compressed) == PAYLOAD
        assert compressor.bytes_read() == len(PAYLOAD)

    def test_gzip_empty_input(self) -> None:
        compressed = GzipCompressor().compress(io.BytesIO(b"")).read()
        assert compressed[:2] == b"\x1f\x8b"
        assert gzip.decompress(compressed) == b""

    def test_gzip_rejects_bad_block_size(self) -> None:
        with pytest.raises(ValueError):
            GzipCompressor(block_size=0)

    def test_empty_input(self) -> None:
        compressor = ZstdCompressor()
        compressed = compressor.compress(io.BytesIO(b"")).read()
        assert compressor.bytes_read() == 0
        assert compressor.decompress(io.BytesIO(compressed)).read() == b""

    def test_noop_passes_through(self) -> None:
        compressor = NoopCompressor()
        source = io.BytesIO(PAYLOAD)
        assert compressor.compress(source) is source
        assert compressor.decompress(source) is source
        assert compressor.bytes_read() == -1
        assert compressor.media_type_suffix() == ""


# ---------------------------------------------------------------------------
# Worker failures
# ---------------------------------------------------------------------------


class TestWorker:
    @pytest.mark.parametrize("algorithm", [Compression.GZIP, Compression.ZSTD])
    def test_input_error_surfaces_on_reader(self, algorithm: Compression) -> None:
        compressor = get_compressor(algorithm)
        out = compressor.compress(_FailingReader(b"some data"))  # type: ignore[arg-type]
        with pytest.raises(CompressionError, match="disk went away") as excinfo:
            out.read()
        assert isinstance(excinfo.value.__cause__, OSError)

    def test_closing_output_stops_worker(self) -> None:
        source = _EndlessReader()
        out = ZstdCompressor(pipe_depth=1).compress(source)  # type: ignore[arg-type]
        assert out.read(1)
        out.close()

        workers = [t for t in threading.enumerate() if t.name == "zstd-compress"]
        for worker in workers:
            worker.join(timeout=10)
            assert not worker.is_alive()
        assert source.reads > 0


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelection:
    @pytest.mark.parametrize(
        "algorithm,expected",
        [
            ("", NoopCompressor),
            ("gzip", GzipCompressor),
            ("zstd", ZstdCompressor),
            (Compression.GZIP, GzipCompressor),
        ],
    )
    def test_get_compressor(self, algorithm: str, expected: type) -> None:
        assert isinstance(get_compressor(algorithm), expected)

    def test_gzip_options_dropped_for_other_variants(self) -> None:
        compressor = get_compressor("zstd", block_size=1024, concurrency=4, level=1, pipe_depth=3)
        assert isinstance(compressor, ZstdCompressor)

    def test_unknown_algorithm(self) -> None:
        with pytest.raises(UnsupportedMediaTypeError):
            get_compressor("bzip2")

    @pytest.mark.parametrize(
        "media_type,expected",
        [
            ("application/vnd.oci.image.layer.v1.tar", Compression.NONE),
            ("application/vnd.oci.image.layer.v1.tar+gzip", Compression.GZIP),
            ("application/vnd.oci.image.layer.v1.tar+zstd", Compression.ZSTD),
            ("application/vnd.oci.image.layer.nondistributable.v1.tar+gzip", Compression.GZIP),
            ("application/vnd.docker.image.rootfs.diff.tar.gzip", Compression.GZIP),
        ],
    )
    def test_compression_for_media_type(self, media_type: str, expected: Compression) -> None:
        assert compression_for_media_type(media_type) is expected

    @pytest.mark.parametrize(
        "media_type",
        [
            "application/vnd.oci.image.layer.v1.tar+bzip2",
            "application/vnd.oci.image.config.v1+json",
        ],
    )
    def test_unsupported_media_type(self, media_type: str) -> None:
        with pytest.raises(UnsupportedMediaTypeError):
            compression_for_media_type(media_type)

    @pytest.mark.parametrize("compression", list(Compression))
    def test_layer_media_type_inverse(self, compression: Compression) -> None:
        assert compression_for_media_type(layer_media_type(compression)) is compression
