"""Pydantic models for upstream connections and their API keys."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def _strip_all_whitespace(v: str) -> str:
    # Application passwords are often displayed in space-separated groups
    return "".join(v.split())


class ConnectionCreate(BaseModel):
    """Request body for registering an upstream site."""

    name: str = Field(..., min_length=1, max_length=100)
    base_url: str = Field(..., min_length=1, max_length=2048)
    identity: str = Field(..., min_length=1, max_length=256)
    secret: str = Field(..., min_length=1, max_length=1024)
    aux_secret: str | None = Field(None, max_length=1024)

    @field_validator("name", "identity")
    @classmethod
    def strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v

    @field_validator("secret")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        v = _strip_all_whitespace(v)
        if not v:
            raise ValueError("secret must not be blank")
        return v


class SecretUpdate(BaseModel):
    """Full replacement of a connection's secret envelope(s)."""

    secret: str = Field(..., min_length=1, max_length=1024)
    aux_secret: str | None = Field(None, max_length=1024)

    @field_validator("secret")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        v = _strip_all_whitespace(v)
        if not v:
            raise ValueError("secret must not be blank")
        return v


class ConnectionResponse(BaseModel):
    """Connection metadata. Envelopes and identity never leave the store."""

    id: UUID
    name: str
    base_url: str
    status: str
    has_aux_secret: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: dict) -> ConnectionResponse:
        return cls(
            id=row["id"],
            name=row["name"],
            base_url=row["base_url"],
            status=row["status"],
            has_aux_secret=bool(row.get("aux_secret_envelope")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class ApiKeyCreate(BaseModel):
    name: str = Field("", max_length=100)


class ApiKeyResponse(BaseModel):
    id: UUID
    connection_id: UUID
    key_prefix: str
    name: str
    status: str
    last_used_at: datetime | None = None
    created_at: datetime


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned exactly once, at creation; carries the plaintext key."""

    api_key: str
