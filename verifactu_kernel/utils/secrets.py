"""
Encryption of certificate passphrases at rest.

AES-256-GCM with a random 96-bit nonce.  Stored form is
``<nonce hex>:<ciphertext+tag hex>``; the business id is bound as
associated data so a ciphertext cannot be moved to another business.
"""

import os
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_BYTES = 12
KEY_BYTES = 32


class SecretBox:
    """Encrypts and decrypts short secrets with one configured key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ValueError(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> "SecretBox":
        try:
            return cls(bytes.fromhex(key_hex))
        except ValueError as exc:
            raise ValueError(f"Encryption key is not valid hex: {exc}") from None

    @staticmethod
    def generate_key_hex() -> str:
        return AESGCM.generate_key(bit_length=KEY_BYTES * 8).hex()

    def encrypt(self, plaintext: str, business_id: UUID) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), str(business_id).encode("ascii"))
        return f"{nonce.hex()}:{sealed.hex()}"

    def decrypt(self, token: str, business_id: UUID) -> str:
        """
        Raises:
            ValueError: malformed token, wrong key, or wrong business.
        """
        try:
            nonce_hex, sealed_hex = token.split(":", 1)
            plaintext = self._aead.decrypt(
                bytes.fromhex(nonce_hex),
                bytes.fromhex(sealed_hex),
                str(business_id).encode("ascii"),
            )
        except (ValueError, InvalidTag) as exc:
            raise ValueError("Cannot decrypt secret: malformed token or wrong key") from exc
        return plaintext.decode("utf-8")
