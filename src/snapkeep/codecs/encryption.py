"""
Authenticated encryption codec for backup payloads.

Payloads are encrypted with Fernet symmetric encryption using a key derived
from a passphrase with PBKDF2.

Security Design:
    - Fernet authenticates every token (HMAC-SHA256), so tampering or
      corruption is detected on decrypt
    - A fresh random 128-bit salt is generated for every file and stored in
      front of the token; the passphrase itself is never written anywhere
    - Key derivation uses PBKDF2-SHA256 (600,000 iterations)
    - Minimum 12-character passphrase required

File Layout:
    MAGIC (6 bytes) | salt (16 bytes) | Fernet token (urlsafe base64)
"""

from __future__ import annotations

import base64
import secrets

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from snapkeep.codecs.base import Codec
from snapkeep.errors import DecryptionError

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 16
MIN_PASSPHRASE_LENGTH = 12
MAGIC = b"SKENC1"


class FernetCodec(Codec):
    """
    Passphrase-based Fernet encryption.

    Usage:
        codec = FernetCodec("correct horse battery staple")
        token = codec.encode(b"payload")
        codec.decode(token)   # b"payload"
    """

    name = "fernet"
    suffix = ".enc"

    def __init__(self, passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> None:
        """
        Args:
            passphrase: Secret used for key derivation (12+ characters).
            iterations: PBKDF2 iteration count.

        Raises:
            ValueError: If the passphrase is too short.
        """
        if not passphrase or len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )
        self._passphrase = passphrase.encode("utf-8")
        self.iterations = iterations

    def encode(self, data: bytes) -> bytes:
        salt = secrets.token_bytes(SALT_LENGTH)
        token = self._derive_key(salt).encrypt(data)
        return MAGIC + salt + token

    def decode(self, data: bytes) -> bytes:
        if not data.startswith(MAGIC) or len(data) <= len(MAGIC) + SALT_LENGTH:
            raise DecryptionError("Decryption failed: payload is not an encrypted backup")

        salt = data[len(MAGIC) : len(MAGIC) + SALT_LENGTH]
        token = data[len(MAGIC) + SALT_LENGTH :]
        try:
            return self._derive_key(salt).decrypt(token)
        except InvalidToken as e:
            raise DecryptionError(
                "Decryption failed: wrong passphrase or corrupted payload"
            ) from e

    def _derive_key(self, salt: bytes) -> Fernet:
        """Derive the Fernet key for one file from the passphrase and its salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # Fernet requires 32-byte keys
            salt=salt,
            iterations=self.iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self._passphrase))
        return Fernet(key)
