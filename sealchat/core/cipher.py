from __future__ import annotations

import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ConfigurationError, DecryptionError

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16
SEPARATOR = ":"

_HEX = re.compile(r"(?:[0-9a-f]{2})+")


class Cipher:
    """AES-256-GCM for the single text field of a message.

    Envelope layout: ``hex(iv):hex(tag):hex(ciphertext)``, lowercase hex only so
    that every stored field has exactly one accepted spelling.
    """

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
            raise ConfigurationError(f"message key must be exactly {KEY_BYTES} bytes")
        self._aes = AESGCM(bytes(key))

    @classmethod
    def from_hex(cls, key_hex: Optional[str]) -> "Cipher":
        if not key_hex:
            raise ConfigurationError("message key is not configured")
        if not isinstance(key_hex, str):
            raise ConfigurationError("message key must be a hex string")
        try:
            key = bytes.fromhex(key_hex.strip())
        except ValueError:
            raise ConfigurationError("message key must be hex encoded") from None
        return cls(key)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        iv = os.urandom(IV_BYTES)
        sealed = self._aes.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return SEPARATOR.join((iv.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, envelope: Optional[str]) -> Optional[str]:
        if envelope is None:
            return None
        iv, tag, ciphertext = _split_envelope(envelope)
        try:
            plaintext = self._aes.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError("authentication tag mismatch") from None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("plaintext is not valid UTF-8") from None


def _split_envelope(envelope: str) -> tuple[bytes, bytes, bytes]:
    if not isinstance(envelope, str):
        raise DecryptionError("envelope must be text")
    parts = envelope.split(SEPARATOR)
    if len(parts) != 3:
        raise DecryptionError("envelope must have three parts")
    if not all(_HEX.fullmatch(part) for part in parts):
        raise DecryptionError("envelope parts must be whole bytes of lowercase hex")
    iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise DecryptionError("bad iv or tag length")
    return iv, tag, ciphertext


__all__ = ["Cipher", "KEY_BYTES", "IV_BYTES", "TAG_BYTES", "SEPARATOR"]
