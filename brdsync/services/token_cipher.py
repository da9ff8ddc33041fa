"""AES-256-GCM encryption of OAuth tokens at rest."""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16
KEY_SIZE = 32  # 256 bits


class TokenCipherError(Exception):
    """Ciphertext is malformed or fails authentication."""


class TokenCipher:
    """
    Encrypt and decrypt short secrets.

    Values are stored as ``nonce:tag:ciphertext`` with each part hex
    encoded. A fresh random nonce is drawn for every value.
    """

    def __init__(self, secret: str, salt: str):
        if not secret:
            raise ValueError("Encryption key cannot be empty")
        self._aesgcm = AESGCM(self._derive_key(secret, salt))

    @staticmethod
    def _derive_key(secret: str, salt: str) -> bytes:
        """Derive the AES key from the configured secret using scrypt."""
        kdf = Scrypt(salt=salt.encode("utf-8"), length=KEY_SIZE, n=2**14, r=8, p=1)
        return kdf.derive(secret.encode("utf-8"))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, value: Optional[str]) -> str:
        """
        Reverse :meth:`encrypt`.

        Raises:
            TokenCipherError: If the value is malformed or was tampered with
        """
        if not value:
            raise TokenCipherError("Empty ciphertext")
        parts = value.split(":")
        if len(parts) != 3:
            raise TokenCipherError("Ciphertext must have three parts")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise TokenCipherError(f"Ciphertext is not hex encoded: {e}") from e
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise TokenCipherError("Invalid nonce or tag length")
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise TokenCipherError("Ciphertext failed authentication") from e
        return plaintext.decode("utf-8")
