"""Authenticated encryption for the login token cache.

AES-256-GCM with a random 96-bit nonce per message; the nonce is stored in
front of the ciphertext. The key lives only in process memory.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class CipherError(Exception):
    """Ciphertext is truncated, tampered with, or from another key."""


class TokenCipher:
    def __init__(self, key: bytes | None = None):
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
        if len(key) != 32:
            raise ValueError("TokenCipher needs a 256-bit key")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, associated_data)

    def decrypt(self, payload: bytes, associated_data: bytes | None = None) -> bytes:
        if len(payload) < NONCE_SIZE + 16:
            raise CipherError("ciphertext too short")
        nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag as e:
            raise CipherError("ciphertext failed authentication") from e
