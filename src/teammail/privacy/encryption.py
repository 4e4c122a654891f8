"""At-rest encryption for short secrets (mailbox passwords, OAuth tokens).

Secrets are sealed with AES-256-GCM and stored as a single string of three
colon-separated hex segments::

    <12-byte IV>:<16-byte authentication tag>:<ciphertext>

Security Properties:
- 256-bit key supplied through configuration, never generated implicitly
- 96-bit random nonce per encryption
- 128-bit authentication tag; decryption fails closed on any mismatch

Usage:
    >>> codec = SecretCodec(key_hex)
    >>> sealed = codec.encrypt("app-password")
    >>> codec.decrypt(sealed)
    'app-password'
"""

from __future__ import annotations

import json
import secrets
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from teammail.errors import (
    AuthenticationTagError,
    InvalidEncryptionKeyError,
    MalformedSecretError,
)

# Constants
KEY_SIZE_BYTES = 32  # 256 bits for AES-256
NONCE_SIZE_BYTES = 12  # 96 bits for GCM
TAG_SIZE_BYTES = 16  # 128-bit authentication tag
SEGMENT_SEPARATOR = ":"


def generate_key() -> str:
    """Return a fresh random key as 64 hex characters."""
    return secrets.token_bytes(KEY_SIZE_BYTES).hex()


class SecretCodec:
    """Authenticated encryption of short strings for storage at rest.

    The codec is a pure transform: no I/O, no caching of plaintext. It
    refuses to operate with a key that is not exactly 32 bytes.
    """

    def __init__(self, key: Union[str, bytes]) -> None:
        self._aesgcm = AESGCM(_coerce_key(key))

    @classmethod
    def from_settings(cls, settings: Any) -> "SecretCodec":
        return cls(settings.encryption_key.get_secret_value())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` into an ``iv:tag:ciphertext`` hex string."""
        nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE_BYTES], sealed[-TAG_SIZE_BYTES:]
        return SEGMENT_SEPARATOR.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, secret: str) -> str:
        """Decrypt an ``iv:tag:ciphertext`` string.

        Raises:
            MalformedSecretError: Value is not three hex segments of valid sizes
            AuthenticationTagError: Tag did not verify (tampering or wrong key)
        """
        nonce, tag, ciphertext = _split_secret(secret)
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise AuthenticationTagError() from None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedSecretError("Decrypted secret is not valid UTF-8") from None

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        """Encrypt a JSON-serializable dictionary."""
        return self.encrypt(json.dumps(data, separators=(",", ":")))

    def decrypt_json(self, secret: str) -> Dict[str, Any]:
        """Decrypt a value produced by ``encrypt_json``."""
        plaintext = self.decrypt(secret)
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError:
            raise MalformedSecretError("Decrypted secret is not JSON") from None
        if not isinstance(payload, dict):
            raise MalformedSecretError("Decrypted secret is not a JSON object")
        return payload


def _coerce_key(key: Union[str, bytes]) -> bytes:
    if isinstance(key, str):
        if len(key) != KEY_SIZE_BYTES * 2:
            raise InvalidEncryptionKeyError(details={"length": len(key)})
        try:
            key = bytes.fromhex(key)
        except ValueError:
            raise InvalidEncryptionKeyError("Encryption key is not hexadecimal") from None
    if len(key) != KEY_SIZE_BYTES:
        raise InvalidEncryptionKeyError(details={"length": len(key)})
    return key


def _split_secret(secret: str) -> tuple[bytes, bytes, bytes]:
    if not isinstance(secret, str):
        raise MalformedSecretError("Encrypted secret must be a string")
    parts = secret.split(SEGMENT_SEPARATOR)
    if len(parts) != 3:
        raise MalformedSecretError(
            "Encrypted secret must have exactly three segments",
            details={"segments": len(parts)},
        )
    try:
        nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError:
        raise MalformedSecretError("Encrypted secret segments must be hex") from None
    if len(nonce) != NONCE_SIZE_BYTES or len(tag) != TAG_SIZE_BYTES:
        raise MalformedSecretError(
            "Encrypted secret has an invalid IV or tag length",
            details={"iv_bytes": len(nonce), "tag_bytes": len(tag)},
        )
    return nonce, tag, ciphertext


__all__ = [
    "KEY_SIZE_BYTES",
    "NONCE_SIZE_BYTES",
    "TAG_SIZE_BYTES",
    "SecretCodec",
    "generate_key",
]
