"""PBKDF2 password hashing for tenant logins.

Stored format: ``pbkdf2$<iterations>$<salt_hex>$<hash_hex>``
"""

from __future__ import annotations

import hashlib
import hmac
import os

_PBKDF2_ITERATIONS = 260_000
_PBKDF2_HASH = "sha256"
_SALT_BYTES = 32

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    """Hash a password with PBKDF2 and a random salt for storage."""
    salt = os.urandom(_SALT_BYTES)
    key_hash = hashlib.pbkdf2_hmac(_PBKDF2_HASH, password.encode(), salt, _PBKDF2_ITERATIONS)
    return f"pbkdf2${_PBKDF2_ITERATIONS}${salt.hex()}${key_hash.hex()}"


def _parse(stored_hash: str) -> tuple[int, bytes, bytes] | None:
    parts = stored_hash.split("$")
    if len(parts) != 4 or parts[0] != "pbkdf2":
        return None
    try:
        iterations = int(parts[1])
        salt = bytes.fromhex(parts[2])
        expected = bytes.fromhex(parts[3])
    except ValueError:
        return None
    if iterations < 1 or not salt or not expected:
        return None
    return iterations, salt, expected


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a password against a stored hash (constant-time comparison)."""
    if not isinstance(stored_hash, str):
        return False
    parsed = _parse(stored_hash)
    if parsed is None:
        return False
    iterations, salt, expected = parsed
    actual = hashlib.pbkdf2_hmac(_PBKDF2_HASH, password.encode(), salt, iterations)
    return hmac.compare_digest(actual, expected)


def needs_rehash(stored_hash: str) -> bool:
    """True when *stored_hash* was produced with a weaker iteration count."""
    parsed = _parse(stored_hash)
    return parsed is None or parsed[0] < _PBKDF2_ITERATIONS
