"""Closed vocabulary of audit actions and actor types."""

from __future__ import annotations

from enum import Enum


class ActorType(str, Enum):
    TENANT = "tenant"
    AUTOMATION = "automation"
    SYSTEM = "system"


AUTH_REGISTER = "auth.register"
AUTH_LOGIN = "auth.login"
AUTH_LOGIN_FAILED = "auth.login_failed"
CONNECTION_CREATE = "connection.create"
CONNECTION_UPDATE_SECRET = "connection.update_secret"
CONNECTION_DELETE = "connection.delete"
API_KEY_CREATE = "api_key.create"
API_KEY_REVOKE = "api_key.revoke"
DOMAIN_CREATE = "domain.create"
DOMAIN_VERIFY = "domain.verify"
DOMAIN_VERIFY_FAILED = "domain.verify_failed"
DOMAIN_ACTIVATE = "domain.activate"
DOMAIN_SUSPEND = "domain.suspend"
DOMAIN_DELETE = "domain.delete"
DOMAIN_SSL_EXPIRED = "domain.ssl_expired"
TENANT_SUSPEND = "tenant.suspend"
USAGE_RESET = "usage.reset"
RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"

ACTIONS: frozenset[str] = frozenset({
    AUTH_REGISTER,
    AUTH_LOGIN,
    AUTH_LOGIN_FAILED,
    CONNECTION_CREATE,
    CONNECTION_UPDATE_SECRET,
    CONNECTION_DELETE,
    API_KEY_CREATE,
    API_KEY_REVOKE,
    DOMAIN_CREATE,
    DOMAIN_VERIFY,
    DOMAIN_VERIFY_FAILED,
    DOMAIN_ACTIVATE,
    DOMAIN_SUSPEND,
    DOMAIN_DELETE,
    DOMAIN_SSL_EXPIRED,
    TENANT_SUSPEND,
    USAGE_RESET,
    RATE_LIMIT_EXCEEDED,
})


def is_known_action(action: str) -> bool:
    return action in ACTIONS
