"""Gzip compression codec."""

from __future__ import annotations

import gzip
import zlib

from snapkeep.codecs.base import Codec
from snapkeep.errors import DecompressionError, EncodingError


class GzipCodec(Codec):
    """
    Gzip compression.

    The gzip header mtime is pinned to 0 so equal input yields equal output.
    """

    name = "gzip"
    suffix = ".gz"

    def __init__(self, level: int = 6) -> None:
        if not 0 <= level <= 9:
            raise ValueError(f"Compression level must be 0-9, got {level}")
        self.level = level

    def encode(self, data: bytes) -> bytes:
        try:
            return gzip.compress(data, compresslevel=self.level, mtime=0)
        except (OSError, zlib.error) as e:
            raise EncodingError(f"Compression failed: {e}") from e

    def decode(self, data: bytes) -> bytes:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise DecompressionError(f"Decompression failed: {e}") from e
