"""Pydantic models for usage reporting."""

from __future__ import annotations

from pydantic import BaseModel


class WindowUsage(BaseModel):
    used: int
    limit: int
    remaining: int
    window_seconds: int
    reset_after: int


class PeriodUsage(BaseModel):
    """Monthly metering for the current UTC calendar month. ``None`` limits mean unlimited."""

    period: str
    used: int
    limit: int | None = None
    remaining: int | None = None
    percent_used: int | None = None


class UsageResponse(BaseModel):
    plan: str
    window: WindowUsage
    current_period: PeriodUsage
