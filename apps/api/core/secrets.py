"""Token encryption envelope using AES-256-GCM.

Envelopes are stored as ``hex(iv):hex(tag):hex(ciphertext)``. The key is the
SHA-256 digest of ``ENCRYPTION_KEY`` so any sufficiently long secret string can
be used.
"""

import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from apps.api.core.errors import (
    ConfigurationError,
    DecryptionError,
    EnvelopeFormatError,
    ReconnectRequiredError,
)

MIN_SECRET_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
ENVELOPE_DELIMITER = ":"


def derive_key(secret: Optional[str]) -> bytes:
    """Derive the 256-bit AES key from the configured secret.

    Raises:
        ConfigurationError: If the secret is missing or too short
    """
    if not secret:
        raise ConfigurationError("ENCRYPTION_KEY not configured")
    if len(secret) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters long"
        )
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt(plaintext: str, secret: Optional[str]) -> str:
    """Encrypt plaintext into an iv:tag:ciphertext envelope.

    Args:
        plaintext: Non-empty string to encrypt
        secret: Encryption secret (at least 32 characters)

    Returns:
        Hex-encoded envelope
    """
    key = derive_key(secret)
    if not plaintext:
        raise ValueError("Cannot encrypt an empty value")

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return ENVELOPE_DELIMITER.join((iv.hex(), tag.hex(), ciphertext.hex()))


def decrypt(envelope: str, secret: Optional[str]) -> str:
    """Decrypt an envelope produced by :func:`encrypt`.

    Raises:
        EnvelopeFormatError: If the envelope is malformed
        ReconnectRequiredError: If the authentication tag does not verify
        DecryptionError: If the envelope decrypts to an empty value
    """
    key = derive_key(secret)

    parts = (envelope or "").split(ENVELOPE_DELIMITER)
    if len(parts) != 3 or not all(parts):
        raise EnvelopeFormatError(
            f"Invalid encrypted token format: expected 3 parts, got {len(parts)}"
        )

    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as e:
        raise EnvelopeFormatError(f"Invalid encrypted token encoding: {e}") from e

    if len(iv) != IV_LENGTH:
        raise EnvelopeFormatError(f"Invalid IV length: expected {IV_LENGTH}, got {len(iv)}")
    if len(tag) != TAG_LENGTH:
        raise EnvelopeFormatError(
            f"Invalid auth tag length: expected {TAG_LENGTH}, got {len(tag)}"
        )

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None).decode("utf-8")
    except InvalidTag as e:
        raise ReconnectRequiredError(
            "Token authentication failed. The token may have been encrypted with a "
            "different key. Please re-connect your account."
        ) from e
    except UnicodeDecodeError as e:
        raise DecryptionError(f"Decrypted token is not valid UTF-8: {e}") from e

    if not plaintext:
        raise DecryptionError("Decryption produced an empty value")
    return plaintext


def is_envelope(value: Optional[str]) -> bool:
    """Whether a stored value looks encrypted (legacy plaintext has no delimiter)."""
    return bool(value) and ENVELOPE_DELIMITER in value


class TokenCipher:
    """Encrypts and decrypts provider tokens with one configured secret."""

    def __init__(self, secret: Optional[str]):
        self._secret = secret

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self._secret)

    def decrypt(self, envelope: str) -> str:
        return decrypt(envelope, self._secret)

    def reveal(self, value: str) -> str:
        """Return plaintext for a stored value, accepting legacy unencrypted values."""
        if not is_envelope(value):
            return value
        return self.decrypt(value)
