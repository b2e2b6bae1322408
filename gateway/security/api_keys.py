"""Opaque API-key generation and digests.

Keys are one-way: only the SHA-256 digest and a short display prefix are
stored. Lookups recompute the digest from the presented key.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass

API_KEY_PREFIX = "gw_live_"
DISPLAY_PREFIX_LENGTH = 12
_RANDOM_BYTES = 32

# gw_live_ + 43 url-safe base64 chars (32 random bytes, unpadded)
_API_KEY_RE = re.compile(r"^gw_live_[A-Za-z0-9_-]{43}$")


@dataclass(frozen=True)
class GeneratedApiKey:
    plaintext: str
    digest: str
    prefix: str

    def __repr__(self) -> str:
        return f"GeneratedApiKey(prefix={self.prefix!r}, digest={self.digest[:8]}...)"


def digest_of(plaintext_key: str) -> str:
    """Hex SHA-256 digest of an API key (64 chars, deterministic)."""
    return hashlib.sha256(plaintext_key.encode("utf-8")).hexdigest()


def generate_api_key() -> GeneratedApiKey:
    """Generate a new API key. The plaintext must be shown to the user exactly once."""
    plaintext = API_KEY_PREFIX + secrets.token_urlsafe(_RANDOM_BYTES)
    return GeneratedApiKey(
        plaintext=plaintext,
        digest=digest_of(plaintext),
        prefix=plaintext[:DISPLAY_PREFIX_LENGTH],
    )


def looks_like_api_key(value: str) -> bool:
    """True if *value* carries the API-key prefix (as opposed to a JWT)."""
    return value.startswith(API_KEY_PREFIX)


def is_valid_api_key_format(value: str) -> bool:
    return bool(_API_KEY_RE.match(value))
