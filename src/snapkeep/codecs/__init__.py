"""
Payload codecs for snapkeep backups.

Full backups pass through a fixed pipeline:

    manifest --SerializationCodec--> JSON bytes --GzipCodec--> --FernetCodec--> payload

Compression and encryption are optional and pluggable; anything implementing
the Codec interface can take their place.
"""

from snapkeep.codecs.base import Codec, CodecPipeline
from snapkeep.codecs.compression import GzipCodec
from snapkeep.codecs.encryption import (
    MIN_PASSPHRASE_LENGTH,
    PBKDF2_ITERATIONS,
    FernetCodec,
)
from snapkeep.codecs.serialization import SerializationCodec

__all__ = [
    "Codec",
    "CodecPipeline",
    "SerializationCodec",
    "GzipCodec",
    "FernetCodec",
    "PBKDF2_ITERATIONS",
    "MIN_PASSPHRASE_LENGTH",
]
