"""Tests for API-key generation and digests."""

from __future__ import annotations

import hashlib

from gateway.security.api_keys import (
    API_KEY_PREFIX,
    digest_of,
    generate_api_key,
    is_valid_api_key_format,
    looks_like_api_key,
)


def test_generated_key_shape():
    key = generate_api_key()
    assert key.plaintext.startswith(API_KEY_PREFIX)
    assert len(key.plaintext) == len(API_KEY_PREFIX) + 43
    assert is_valid_api_key_format(key.plaintext)


def test_digest_is_sha256_hex():
    key = generate_api_key()
    assert key.digest == hashlib.sha256(key.plaintext.encode()).hexdigest()
    assert len(key.digest) == 64
    assert digest_of(key.plaintext) == key.digest


def test_prefix_is_display_only():
    key = generate_api_key()
    assert key.plaintext.startswith(key.prefix)
    assert len(key.prefix) < len(key.plaintext)


def test_repr_hides_plaintext():
    key = generate_api_key()
    assert key.plaintext not in repr(key)


def test_no_collisions():
    keys = {generate_api_key().plaintext for _ in range(10_000)}
    assert len(keys) == 10_000


def test_format_checks():
    assert looks_like_api_key("gw_live_anything")
    assert not looks_like_api_key("eyJhbGciOi.x.y")
    assert not is_valid_api_key_format("gw_live_short")
    assert not is_valid_api_key_format("gw_live_" + "a" * 42 + "!")
    assert not is_valid_api_key_format("gw_test_" + "a" * 43)
