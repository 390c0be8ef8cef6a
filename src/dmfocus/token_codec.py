"""Summary: AES-256-GCM encryption for provider access tokens at rest.

Importance: Keeps Instagram tokens unreadable in the database while staying reversible for API calls.
Alternatives: Use a dedicated secrets manager or KMS envelope encryption.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dmfocus.errors import CryptoError


NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16


class TokenCodec:
    """Summary: Hex-encoded AES-GCM token encryptor.

    Importance: Each encryption draws a fresh 96-bit nonce that is prepended to the ciphertext.
    Alternatives: Use Fernet with a base64 key.
    """

    def __init__(self, key_hex: str) -> None:
        """Summary: Initialize with a 256-bit key given as hex.

        Importance: Key validation happens on first use so the app can boot without one.
        Alternatives: Validate eagerly and refuse to start.
        """

        self._key_hex = key_hex

    def encrypt(self, plaintext: str) -> str:
        """Summary: Encrypt plaintext into nonce||ciphertext as hex.

        Importance: Produces different output for the same input on every call.
        Alternatives: Use a deterministic nonce derived from the plaintext.
        """

        cipher = self._cipher()
        nonce = os.urandom(NONCE_SIZE)
        sealed = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return (nonce + sealed).hex()

    def decrypt(self, payload: str) -> str:
        """Summary: Decrypt a hex payload produced by encrypt.

        Importance: Fails hard on tampered or malformed input.
        Alternatives: Return the payload unchanged when decryption fails.
        """

        cipher = self._cipher()
        try:
            raw = bytes.fromhex(payload)
        except ValueError as exc:
            raise CryptoError("Ciphertext is not valid hex") from exc
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("Ciphertext is too short")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = cipher.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise CryptoError("Ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")

    def _cipher(self) -> AESGCM:
        """Summary: Build the AES-GCM cipher from the configured key.

        Importance: Rejects malformed or wrong-length keys before any crypto runs.
        Alternatives: Pad or hash short keys into 32 bytes.
        """

        try:
            key = bytes.fromhex(self._key_hex.strip())
        except ValueError as exc:
            raise CryptoError("Encryption key is not valid hex") from exc
        if len(key) != KEY_SIZE:
            raise CryptoError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        return AESGCM(key)
