"""Compressed stream helpers for the array store.

Record streams are written sequentially and read back sequentially, so only
streaming compressors are needed: zstd (default) and gzip.
"""

import gzip
import logging
from enum import Enum
from pathlib import Path
from typing import BinaryIO

import zstandard


logger = logging.getLogger(__name__)

# zstd level 3 is the library default and keeps encoding fast for large traces
ZSTD_LEVEL = 3
GZIP_LEVEL = 6


class CompressionFormat(str, Enum):
    """Compression formats supported for record streams."""

    ZSTD = 'zstd'
    GZIP = 'gzip'

    @classmethod
    def from_string(cls, value: str) -> 'CompressionFormat':
        """Parse a format name, case-insensitive.

        Raises:
            ValueError: If the name is not a supported format
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f'Unsupported compression format: {value!r}') from None


def open_compressed_writer(path: str | Path, compression: CompressionFormat) -> BinaryIO:
    """Open a fresh (truncated) compressed stream for writing."""
    if compression == CompressionFormat.ZSTD:
        cctx = zstandard.ZstdCompressor(level=ZSTD_LEVEL)
        return zstandard.open(path, 'wb', cctx=cctx)
    return gzip.open(path, 'wb', compresslevel=GZIP_LEVEL)


def open_compressed_reader(path: str | Path, compression: CompressionFormat) -> BinaryIO:
    """Open a compressed stream for reading from the start."""
    if compression == CompressionFormat.ZSTD:
        return zstandard.open(path, 'rb')
    return gzip.open(path, 'rb')


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read exactly `size` bytes from a decompression stream.

    Decompression readers may return short reads, so keep reading until the
    requested size is reached or the stream ends.

    Returns:
        The bytes read; shorter than `size` only at end of stream
    """
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)
