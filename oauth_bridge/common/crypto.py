import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


class InvalidCiphertext(Exception):
    """Raised when a stored token cannot be authenticated or decoded."""


class TokenCipher:
    """
    AES-256-GCM cipher for upstream tokens at rest.

    Encoded layout: base64(nonce || auth_tag || ciphertext).
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Encryption key must be exactly {KEY_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, encoded: str) -> str:
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidCiphertext("Stored token is not valid base64") from exc

        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            raise InvalidCiphertext("Stored token is truncated")

        nonce = data[:NONCE_LENGTH]
        tag = data[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = data[NONCE_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise InvalidCiphertext("Stored token failed authentication") from exc

        return plaintext.decode("utf-8")
