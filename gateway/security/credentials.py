"""Inbound credential resolution.

A request may carry credentials in several ways. They are tried in a fixed
order, and only the first source present is used:

1. inline upstream headers (``x-upstream-url`` / ``-username`` / ``-password``)
2. a bearer value (``Authorization: Bearer`` or ``X-API-Key``), either an
   API key or a session token
3. static fallback credentials from configuration

Once a source is identified, failing it is final: the request is rejected
with one generic ``InvalidCredentials`` message and never drops through to
the fallback tier.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union
from uuid import UUID

import structlog

from gateway.errors import DecryptionFailed, InvalidCredentials, NoCredentials
from gateway.security import cipher
from gateway.security.api_keys import digest_of, is_valid_api_key_format, looks_like_api_key
from gateway.security.tokens import verify_token
from gateway.store import api_keys as api_key_store
from gateway.store import connections as connection_store
from gateway.store import postgres
from gateway.store import redis as redis_store

logger = structlog.get_logger()

INLINE_HEADERS = ("x-upstream-url", "x-upstream-username", "x-upstream-password")
LEGACY_INLINE_HEADERS = ("x-wordpress-url", "x-wordpress-username", "x-wordpress-password")

API_KEY_CACHE_PREFIX = "apikey:"

SOURCE_INLINE = "inline"
SOURCE_API_KEY = "api_key"
SOURCE_TOKEN = "token"
SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class InlineCredentials:
    base_url: str
    identity: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class BearerToken:
    token: str = field(repr=False)
    connection_id: str | None = None


@dataclass(frozen=True)
class ApiKeyCredential:
    key: str = field(repr=False)


@dataclass(frozen=True)
class FallbackCredentials:
    base_url: str
    identity: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class NoCredentialSource:
    pass


CredentialSource = Union[
    InlineCredentials, BearerToken, ApiKeyCredential, FallbackCredentials, NoCredentialSource,
]


@dataclass(frozen=True)
class ResolvedCredential:
    """Tenant context plus decrypted upstream credentials for one request."""

    tenant_id: str | None
    upstream_base_url: str
    upstream_identity: str
    upstream_secret: str = field(repr=False)
    source: str
    api_key_id: str | None = None
    connection_id: str | None = None
    plan: str | None = None


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value.strip() if value else ""


def _inline_source(headers: Mapping[str, str]) -> InlineCredentials | None:
    for names in (INLINE_HEADERS, LEGACY_INLINE_HEADERS):
        url, identity, secret = (_header(headers, n) for n in names)
        if url and identity and secret:
            return InlineCredentials(base_url=url, identity=identity, secret=secret)
    return None


def _bearer_value(headers: Mapping[str, str]) -> str:
    auth = _header(headers, "authorization")
    if auth:
        scheme, _, value = auth.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return _header(headers, "x-api-key")


def detect_sources(headers: Mapping[str, str], settings: Any) -> list[CredentialSource]:
    """Return every credential source present on the request, in precedence order.

    Ends with ``NoCredentialSource`` so the list is never empty.
    """
    sources: list[CredentialSource] = []

    inline = _inline_source(headers)
    if inline is not None:
        sources.append(inline)

    bearer = _bearer_value(headers)
    if bearer:
        if looks_like_api_key(bearer):
            sources.append(ApiKeyCredential(key=bearer))
        else:
            sources.append(BearerToken(
                token=bearer,
                connection_id=_header(headers, "x-connection-id") or None,
            ))

    if getattr(settings, "fallback_configured", False):
        sources.append(FallbackCredentials(
            base_url=settings.fallback_upstream_url,
            identity=settings.fallback_upstream_username,
            secret=settings.fallback_upstream_password,
        ))

    sources.append(NoCredentialSource())
    return sources


async def _active_connections(tenant_id: UUID) -> list[dict[str, Any]]:
    return await connection_store.list_connections(tenant_id, active_only=True)


@dataclass
class ResolverDeps:
    """Key material and lookups the resolver needs. Tests swap the callables."""

    master_key: str
    token_secret: str
    api_key_cache_ttl: int = 3600
    find_api_key: Callable[[str], Awaitable[dict | None]] = api_key_store.find_active_by_digest
    touch_last_used: Callable[[Any], Awaitable[None]] = api_key_store.touch_last_used
    get_tenant: Callable[[UUID], Awaitable[dict | None]] = postgres.get_tenant
    get_connection: Callable[[UUID, UUID], Awaitable[dict | None]] = connection_store.get_connection
    list_active_connections: Callable[[UUID], Awaitable[list]] = _active_connections
    cache_get: Callable[[str], Awaitable[Any]] = redis_store.cache_get_json
    cache_set: Callable[[str, Any, int], Awaitable[None]] = redis_store.cache_set_json

    @classmethod
    def from_settings(cls, settings: Any) -> ResolverDeps:
        return cls(
            master_key=settings.master_key,
            token_secret=settings.token_secret,
            api_key_cache_ttl=settings.api_key_cache_ttl_seconds,
        )


_background_tasks: set[asyncio.Task] = set()


async def _touch_quietly(deps: ResolverDeps, key_id: Any) -> None:
    try:
        await deps.touch_last_used(key_id)
    except Exception:
        logger.warning("api_key_touch_failed", api_key_id=str(key_id), exc_info=True)


def _schedule_touch(deps: ResolverDeps, key_id: Any) -> None:
    task = asyncio.create_task(_touch_quietly(deps, key_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _decrypt(envelope: str, master_key: str) -> str:
    try:
        return cipher.decrypt(envelope, master_key)
    except (DecryptionFailed, ValueError):
        logger.error("credential_decrypt_failed")
        raise InvalidCredentials() from None


def _as_uuid(value: Any) -> UUID:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        raise InvalidCredentials() from None


async def _resolve_api_key(source: ApiKeyCredential, deps: ResolverDeps) -> ResolvedCredential:
    if not is_valid_api_key_format(source.key):
        logger.info("credential_rejected", source=SOURCE_API_KEY, reason="format")
        raise InvalidCredentials()

    digest = digest_of(source.key)
    cache_key = API_KEY_CACHE_PREFIX + digest
    record = await deps.cache_get(cache_key)
    if record is None:
        record = await deps.find_api_key(digest)
        if record is None:
            logger.info("credential_rejected", source=SOURCE_API_KEY, reason="unknown_or_revoked")
            raise InvalidCredentials()
        # Cached record holds envelopes only, never decrypted material
        await deps.cache_set(cache_key, record, deps.api_key_cache_ttl)

    if record.get("tenant_status") != "active" or record.get("connection_status") != "active":
        logger.info("credential_rejected", source=SOURCE_API_KEY, reason="inactive")
        raise InvalidCredentials()

    identity = _decrypt(record["identity_envelope"], deps.master_key)
    secret = _decrypt(record["secret_envelope"], deps.master_key)
    _schedule_touch(deps, record["api_key_id"])

    return ResolvedCredential(
        tenant_id=str(record["tenant_id"]),
        upstream_base_url=record["base_url"],
        upstream_identity=identity,
        upstream_secret=secret,
        source=SOURCE_API_KEY,
        api_key_id=str(record["api_key_id"]),
        connection_id=str(record["connection_id"]),
        plan=record.get("plan"),
    )


async def _resolve_token(source: BearerToken, deps: ResolverDeps) -> ResolvedCredential:
    claims = verify_token(source.token, deps.token_secret)
    if claims is None or not claims.get("sub"):
        logger.info("credential_rejected", source=SOURCE_TOKEN, reason="token")
        raise InvalidCredentials()

    tenant_id = _as_uuid(claims["sub"])
    tenant = await deps.get_tenant(tenant_id)
    if tenant is None or tenant.get("status") != "active":
        logger.info("credential_rejected", source=SOURCE_TOKEN, reason="tenant_inactive")
        raise InvalidCredentials()

    if source.connection_id:
        connection = await deps.get_connection(tenant_id, _as_uuid(source.connection_id))
        if connection is None or connection.get("status") != "active":
            raise InvalidCredentials()
    else:
        active = await deps.list_active_connections(tenant_id)
        if len(active) != 1:
            logger.info("credential_rejected", source=SOURCE_TOKEN, reason="connection_ambiguous",
                        active_connections=len(active))
            raise InvalidCredentials()
        connection = active[0]

    return ResolvedCredential(
        tenant_id=str(tenant_id),
        upstream_base_url=connection["base_url"],
        upstream_identity=_decrypt(connection["identity_envelope"], deps.master_key),
        upstream_secret=_decrypt(connection["secret_envelope"], deps.master_key),
        source=SOURCE_TOKEN,
        connection_id=str(connection["id"]),
        plan=tenant.get("plan"),
    )


def _resolve_inline(source: InlineCredentials | FallbackCredentials, name: str) -> ResolvedCredential:
    if not source.base_url.lower().startswith(("http://", "https://")):
        raise InvalidCredentials()
    return ResolvedCredential(
        tenant_id=None,
        upstream_base_url=source.base_url.rstrip("/"),
        upstream_identity=source.identity,
        upstream_secret=source.secret,
        source=name,
    )


async def resolve_credential(
    headers: Mapping[str, str], settings: Any, deps: ResolverDeps,
) -> ResolvedCredential:
    """Resolve the request's tenant and upstream credentials.

    Raises NoCredentials when no source applies and InvalidCredentials when
    the first present source fails for any reason.
    """
    source = detect_sources(headers, settings)[0]

    if isinstance(source, InlineCredentials):
        return _resolve_inline(source, SOURCE_INLINE)
    if isinstance(source, ApiKeyCredential):
        return await _resolve_api_key(source, deps)
    if isinstance(source, BearerToken):
        return await _resolve_token(source, deps)
    if isinstance(source, FallbackCredentials):
        return _resolve_inline(source, SOURCE_FALLBACK)
    raise NoCredentials()


async def evict_cached_keys(digests: list[str]) -> None:
    """Drop cached API-key records after revocation."""
    for digest in digests:
        await redis_store.cache_delete(API_KEY_CACHE_PREFIX + digest)
