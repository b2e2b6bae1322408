"""Pydantic models for tenant registration and sessions."""

from __future__ import annotations

import re
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from gateway.security.passwords import MIN_PASSWORD_LENGTH

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class TenantRegister(BaseModel):
    """Request body for creating a tenant account."""

    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL_RE.match(v):
            raise ValueError("Invalid email address")
        return v


class TenantLogin(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class TenantResponse(BaseModel):
    id: UUID
    email: str
    plan: str
    status: str
    created_at: datetime


class SessionResponse(BaseModel):
    """Issued session token plus the tenant it identifies."""

    token: str
    token_type: str = "bearer"
    expires_in: int
    tenant: TenantResponse
