"""Pydantic models for audit log queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class AuditEntryResponse(BaseModel):
    id: int
    tenant_id: UUID
    actor_id: str
    actor_type: str
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime


class AuditQueryResponse(BaseModel):
    items: list[AuditEntryResponse] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
