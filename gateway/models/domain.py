"""Pydantic models and hostname rules for tenant custom domains."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from gateway.errors import DomainValidationFailed


class DomainStatus(str, Enum):
    """pending_verification → pending_ssl → active, plus failure/admin states."""

    PENDING_VERIFICATION = "pending_verification"
    PENDING_SSL = "pending_ssl"
    ACTIVE = "active"
    VERIFICATION_FAILED = "verification_failed"
    SUSPENDED = "suspended"
    SSL_EXPIRED = "ssl_expired"


class SslStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    FAILED = "failed"


VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    DomainStatus.PENDING_VERIFICATION: frozenset({
        DomainStatus.PENDING_SSL,
        DomainStatus.VERIFICATION_FAILED,
        DomainStatus.SUSPENDED,
    }),
    DomainStatus.PENDING_SSL: frozenset({
        DomainStatus.ACTIVE,
        DomainStatus.VERIFICATION_FAILED,
        DomainStatus.SUSPENDED,
    }),
    DomainStatus.ACTIVE: frozenset({
        DomainStatus.SSL_EXPIRED,
        DomainStatus.SUSPENDED,
    }),
    DomainStatus.SSL_EXPIRED: frozenset({
        DomainStatus.PENDING_SSL,
        DomainStatus.SUSPENDED,
    }),
    DomainStatus.VERIFICATION_FAILED: frozenset(),  # terminal
    DomainStatus.SUSPENDED: frozenset(),  # terminal (administrative)
}


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


MIN_HOSTNAME_LENGTH = 4
MAX_HOSTNAME_LENGTH = 253

# Labels of alnum/hyphen not starting with a hyphen; alphabetic TLD >= 2 chars
_HOSTNAME_RE = re.compile(
    r"^(?!-)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
    r"(\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*"
    r"\.[a-z]{2,}$"
)

_BLOCKED_PATTERNS = (
    re.compile(r"^localhost"),
    re.compile(r"^127\."),
    re.compile(r"^10\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[01])\."),
    re.compile(r"^169\.254\."),
    re.compile(r"^0\."),
    re.compile(r"\.local$"),
    re.compile(r"\.localhost$"),
    re.compile(r"\.internal$"),
)

_SCHEME_RE = re.compile(r"^https?://")


def normalize_hostname(hostname: str) -> str:
    """Trim, lowercase, strip an http(s) scheme and trailing slashes."""
    value = hostname.strip().lower()
    value = _SCHEME_RE.sub("", value)
    return value.rstrip("/")


def validate_hostname(hostname: str, platform_base_domains: list[str] | tuple[str, ...] = ()) -> str:
    """Normalize *hostname* and return it, or raise DomainValidationFailed."""
    if not isinstance(hostname, str):
        raise DomainValidationFailed("Domain must be a string")
    value = normalize_hostname(hostname)
    if len(value) < MIN_HOSTNAME_LENGTH:
        raise DomainValidationFailed("Domain is too short")
    if len(value) > MAX_HOSTNAME_LENGTH:
        raise DomainValidationFailed("Domain is too long")
    if not _HOSTNAME_RE.match(value):
        raise DomainValidationFailed("Invalid domain format")
    for pattern in _BLOCKED_PATTERNS:
        if pattern.search(value):
            raise DomainValidationFailed("This domain cannot be used")
    for base in platform_base_domains:
        base = base.strip().lower()
        if base and (value == base or value.endswith("." + base)):
            raise DomainValidationFailed("This domain cannot be used")
    return value


class DomainCreate(BaseModel):
    """Request body for registering a custom domain."""

    hostname: str = Field(..., min_length=1, max_length=512)


class DomainVerificationInfo(BaseModel):
    record_type: str = "TXT"
    record_name: str
    record_value: str


class DomainResponse(BaseModel):
    """Safe response body for a custom domain."""

    id: UUID
    hostname: str
    status: DomainStatus
    verification: DomainVerificationInfo
    verified_at: datetime | None = None
    ssl_status: SslStatus | None = None
    ssl_expires_at: datetime | None = None
    last_check_at: datetime | None = None
    check_count: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: dict) -> DomainResponse:
        return cls(
            id=row["id"],
            hostname=row["hostname"],
            status=row["status"],
            verification=DomainVerificationInfo(
                record_name=row["verification_record"],
                record_value=row["verification_token"],
            ),
            verified_at=row.get("verified_at"),
            ssl_status=row.get("ssl_status"),
            ssl_expires_at=row.get("ssl_expires_at"),
            last_check_at=row.get("last_check_at"),
            check_count=row.get("check_count", 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class VerifyResponse(BaseModel):
    verified: bool
    status: DomainStatus
    message: str
    code: str | None = None
    next_steps: list[str] = Field(default_factory=list)
    domain: DomainResponse
