"""
Key-at-rest codec and key format helpers.

Secrets are sealed with AES-256-GCM. Each call to ``encrypt`` draws a fresh
salt and nonce; the per-record key is derived from the process-wide master
key with HKDF-SHA256 over that salt.

Stored blob layout (base64 encoded)::

    salt (16) || nonce (12) || tag (16) || ciphertext
"""

import base64
import binascii
import hmac
import os
import re
import secrets
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import IntegrityError

SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

API_KEY_PREFIX = "ck_"
_API_KEY_PATTERN = re.compile(r"^ck_[a-f0-9]{64}$")


class KeyCodec:
    """Encrypts and decrypts API key secrets for storage."""

    _INFO = b"cyberkey-api-key-secret"

    def __init__(self, master_key: Union[str, bytes]):
        """Initialize the codec.

        Args:
            master_key: Process-wide secret loaded from configuration

        Raises:
            ValueError: If the master key is empty
        """
        if not master_key:
            raise ValueError("master_key is required and cannot be empty")
        self._master_key = master_key.encode() if isinstance(master_key, str) else master_key

    def _derive(self, salt: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            info=self._INFO,
        )
        return hkdf.derive(self._master_key)

    def encrypt(self, plaintext: str) -> str:
        """Seal a secret and return the base64 blob."""
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(self._derive(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Open a blob produced by ``encrypt``.

        Raises:
            IntegrityError: If the blob is malformed or fails authentication.
                No partial plaintext is ever returned.
        """
        try:
            raw = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise IntegrityError("Stored secret is not valid base64") from e

        header = SALT_SIZE + NONCE_SIZE + TAG_SIZE
        if len(raw) < header:
            raise IntegrityError("Stored secret is truncated")

        salt = raw[:SALT_SIZE]
        nonce = raw[SALT_SIZE:SALT_SIZE + NONCE_SIZE]
        tag = raw[SALT_SIZE + NONCE_SIZE:header]
        ciphertext = raw[header:]

        try:
            plaintext = AESGCM(self._derive(salt)).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Stored secret failed authentication") from e
        return plaintext.decode("utf-8")


def generate_secure_key() -> str:
    """Generate an internal API key: ``ck_`` followed by 32 random bytes in hex."""
    return API_KEY_PREFIX + secrets.token_hex(32)


def is_valid_api_key(key: str) -> bool:
    """Check that a key matches the internal ``ck_`` + 64 lowercase hex format."""
    if not isinstance(key, str):
        return False
    return _API_KEY_PATTERN.fullmatch(key) is not None


def safe_compare(a: str, b: str) -> bool:
    """Compare two secrets in constant time."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
