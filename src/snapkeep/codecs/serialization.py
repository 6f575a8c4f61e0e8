"""
Canonical JSON serialization for backup manifests.

The same document always serializes to the same bytes (sorted keys, compact
separators, UTF-8), so checksums over a backup are reproducible.

Type mapping:
    - datetime / date    -> ISO-8601 string (naive datetimes are taken as UTC)
    - Decimal            -> string
    - bytes / bytearray  -> {"__bytes__": "<base64>"}, decoded back to bytes
    - anything else that JSON cannot represent raises EncodingError
"""

from __future__ import annotations

import base64
import json
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from snapkeep.errors import EncodingError

BYTES_TAG = "__bytes__"


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not serializable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and BYTES_TAG in obj and isinstance(obj[BYTES_TAG], str):
        return base64.b64decode(obj[BYTES_TAG])
    return obj


class SerializationCodec:
    """Encode documents to canonical JSON bytes and back."""

    name = "json"

    def __init__(self, indent: int | None = None) -> None:
        """
        Args:
            indent: Pretty-print indentation. None gives the compact
                    canonical form used for full backups.
        """
        self.indent = indent

    def encode(self, document: Any) -> bytes:
        """
        Serialize a document.

        Raises:
            EncodingError: If the document contains unsupported types.
        """
        separators = (",", ":") if self.indent is None else (",", ": ")
        try:
            text = json.dumps(
                document,
                sort_keys=True,
                separators=separators,
                indent=self.indent,
                ensure_ascii=False,
                allow_nan=False,
                default=_default,
            )
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Cannot serialize backup: {e}") from e
        return text.encode("utf-8")

    def decode(self, data: bytes) -> Any:
        """
        Parse bytes produced by ``encode``.

        Raises:
            EncodingError: If the bytes are not valid UTF-8 JSON.
        """
        try:
            return json.loads(data.decode("utf-8"), object_hook=_object_hook)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EncodingError(f"Cannot parse backup payload: {e}") from e
