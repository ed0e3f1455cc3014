"""Generation and hashing of the short-lived secrets.

Raw secrets only ever leave this module to be handed to the user once; stores
see the SHA-256 hex digest produced by :meth:`SecretCodec.hash`.
"""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Callable

# Largest multiple of 10 that fits in a byte; higher bytes are rejected so
# every digit is equally likely.
_DIGIT_CUTOFF = 250

REMEMBER_TOKEN_BYTES = 16
RESET_TOKEN_BYTES = 16
EMAIL_VERIFICATION_TOKEN_BYTES = 32


class EntropySourceError(RuntimeError):
    """The random source returned fewer bytes than requested."""


class SecretCodec:
    def __init__(self, randbytes: Callable[[int], bytes] = os.urandom) -> None:
        self._randbytes = randbytes

    def _read(self, nbytes: int) -> bytes:
        data = self._randbytes(nbytes)
        if len(data) < nbytes:
            raise EntropySourceError(
                f"random source returned {len(data)} of {nbytes} bytes"
            )
        return data

    def generate_numeric_code(self, length: int = 6) -> str:
        if length < 1:
            raise ValueError("code length must be positive")
        digits: list[str] = []
        while len(digits) < length:
            for byte in self._read(length - len(digits)):
                if byte < _DIGIT_CUTOFF:
                    digits.append(str(byte % 10))
        return "".join(digits)

    def generate_opaque_token(self, nbytes: int = REMEMBER_TOKEN_BYTES) -> str:
        if nbytes < 1:
            raise ValueError("token size must be positive")
        return base64.urlsafe_b64encode(self._read(nbytes)).decode("ascii").rstrip("=")

    @staticmethod
    def hash(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()
