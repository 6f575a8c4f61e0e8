"""
Codec interface for backup payloads.

A codec is a reversible bytes-to-bytes transform. Compression and encryption
are codecs so algorithms can be swapped without touching the writer or the
restore engine. A pipeline applies codecs in order on encode and in reverse
order on decode; each codec also contributes its filename suffix.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

logger = logging.getLogger(__name__)


class Codec(ABC):
    """
    Abstract base class for payload codecs.

    Subclasses must define ``name`` and ``suffix`` and implement
    ``encode``/``decode``. ``decode(encode(x)) == x`` must hold for all input.
    """

    name: str = ""
    suffix: str = ""

    @abstractmethod
    def encode(self, data: bytes) -> bytes:
        """Transform payload bytes for storage."""
        pass

    @abstractmethod
    def decode(self, data: bytes) -> bytes:
        """Reverse ``encode``."""
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class CodecPipeline:
    """
    Ordered chain of codecs.

    Example:
        pipeline = CodecPipeline([GzipCodec(), FernetCodec(passphrase)])
        payload = pipeline.encode(raw)
        pipeline.suffix   # ".gz.enc"
    """

    def __init__(self, codecs: Sequence[Codec] | None = None) -> None:
        self.codecs: list[Codec] = list(codecs or [])

    @property
    def suffix(self) -> str:
        return "".join(codec.suffix for codec in self.codecs)

    def encode(self, data: bytes) -> bytes:
        for codec in self.codecs:
            data = codec.encode(data)
            logger.debug(f"Encoded payload with {codec.name}: {len(data):,} bytes")
        return data

    def decode(self, data: bytes) -> bytes:
        for codec in reversed(self.codecs):
            data = codec.decode(data)
            logger.debug(f"Decoded payload with {codec.name}: {len(data):,} bytes")
        return data

    def __len__(self) -> int:
        return len(self.codecs)
