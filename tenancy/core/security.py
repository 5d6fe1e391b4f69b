"""Security utilities: credential encryption and password generation."""

import json
import os
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# ── Tenant password generation ───────────────────────────────

# No quote or backslash characters: the password ends up inside a SQL string
# literal in CREATE ROLE, which cannot take a bind parameter.
PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!#%*+-._~"
PASSWORD_LENGTH = 32


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Generate a cryptographically secure password for a tenant role."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


# ── Field-level encryption (AES-256-GCM) ─────────────────────

NONCE_BYTES = 12


class DecryptionError(ValueError):
    """Ciphertext is malformed, was tampered with, or uses another key."""


class CredentialCipher:
    """Authenticated encryption of JSON documents.

    Output format is ``<nonce hex>:<ciphertext+tag hex>``. The associated
    data (typically the owning shop id) is authenticated but not stored, so
    a blob only decrypts in the context it was written for.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("AES-256-GCM requires a 32-byte key")
        self._aead = AESGCM(key)

    def encrypt(self, document: dict, associated_data: str = "") -> str:
        nonce = os.urandom(NONCE_BYTES)
        payload = json.dumps(document, separators=(",", ":")).encode()
        ciphertext = self._aead.encrypt(nonce, payload, associated_data.encode())
        return f"{nonce.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str, associated_data: str = "") -> dict:
        nonce_hex, sep, body_hex = token.partition(":")
        if not sep:
            raise DecryptionError("invalid ciphertext format")
        try:
            nonce = bytes.fromhex(nonce_hex)
            body = bytes.fromhex(body_hex)
        except ValueError as exc:
            raise DecryptionError("ciphertext is not hex-encoded") from exc
        if len(nonce) != NONCE_BYTES:
            raise DecryptionError("invalid nonce length")
        try:
            plaintext = self._aead.decrypt(nonce, body, associated_data.encode())
        except InvalidTag as exc:
            raise DecryptionError("authentication tag mismatch") from exc
        try:
            document = json.loads(plaintext)
        except ValueError as exc:
            raise DecryptionError("decrypted payload is not JSON") from exc
        if not isinstance(document, dict):
            raise DecryptionError("decrypted payload is not an object")
        return document
