"""AES-256-GCM encryption for tenant secrets at rest.

The master key is a configuration string; a 256-bit AES key is derived from
it with PBKDF2-HMAC-SHA256 under a fixed application salt, so the same master
key always yields the same AES key and persisted envelopes survive redeploys.

Envelope format::

    v1.<base64url(nonce[12] || ciphertext || tag[16])>

Every call to :func:`encrypt` draws a fresh random nonce.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from gateway.errors import DecryptionFailed

ENVELOPE_VERSION = "v1"
NONCE_LENGTH = 12
TAG_LENGTH = 16

_KDF_SALT = b"tenant-gateway-secret-cipher"
_KDF_ITERATIONS = 100_000


@lru_cache(maxsize=8)
def _derive_key(master_key: str) -> bytes:
    if not master_key:
        raise ValueError("master_key must not be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(master_key.encode("utf-8"))


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def encrypt(plaintext: str, master_key: str) -> str:
    """Encrypt *plaintext* and return a self-describing envelope."""
    aesgcm = AESGCM(_derive_key(master_key))
    nonce = secrets.token_bytes(NONCE_LENGTH)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return f"{ENVELOPE_VERSION}.{_b64encode(nonce + ciphertext)}"


def decrypt(envelope: str, master_key: str) -> str:
    """Decrypt an envelope produced by :func:`encrypt`.

    Raises DecryptionFailed on a wrong key, tampered or malformed envelope.
    """
    if not isinstance(envelope, str):
        raise DecryptionFailed()
    version, sep, body = envelope.partition(".")
    if not sep or version != ENVELOPE_VERSION:
        raise DecryptionFailed()
    try:
        raw = _b64decode(body)
    except (binascii.Error, ValueError):
        raise DecryptionFailed() from None
    if len(raw) < NONCE_LENGTH + TAG_LENGTH:
        raise DecryptionFailed()

    nonce, ciphertext = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
    aesgcm = AESGCM(_derive_key(master_key))
    try:
        plaintext = aesgcm.decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise DecryptionFailed() from None
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptionFailed() from None


def reencrypt(envelope: str, old_master_key: str, new_master_key: str) -> str:
    """Re-wrap an envelope under a new master key (key rotation)."""
    return encrypt(decrypt(envelope, old_master_key), new_master_key)


def encrypt_optional(plaintext: str | None, master_key: str) -> str | None:
    """Encrypt when a value is present; ``None`` passes through."""
    if plaintext is None:
        return None
    return encrypt(plaintext, master_key)
