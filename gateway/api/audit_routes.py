"""Tenant audit log query and compliance export API."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from gateway.api.auth import TenantPrincipal, require_tenant
from gateway.audit.recorder import AuditRecorder, get_recorder
from gateway.models.audit import AuditEntryResponse, AuditQueryResponse
from gateway.store.audit import MAX_QUERY_LIMIT
from gateway.utils.sanitize import strip_control_chars

logger = structlog.get_logger()

router = APIRouter(prefix="/api/audit-logs", tags=["audit"])

_CSV_COLUMNS = [
    "id", "created_at", "actor_type", "actor_id", "action", "resource_type",
    "resource_id", "details", "ip_address", "user_agent",
]

# Spreadsheet formula triggers (CSV injection), including whitespace and
# separators used to hide a formula in an adjacent cell
_CSV_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r", "|", ";")


def _parse_datetime(value: str | None, field_name: str) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        safe_preview = strip_control_chars(value[:40]) + ("..." if len(value) > 40 else "")
        raise HTTPException(
            status_code=422,
            detail=f"Invalid ISO datetime for {field_name}: {safe_preview!r}",
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def csv_safe(value: Any) -> str:
    """Prefix formula-looking cells with a single quote so spreadsheets show text."""
    if isinstance(value, dict):
        value = json.dumps(value, sort_keys=True)
    elif isinstance(value, datetime):
        value = value.isoformat()
    s = str(value) if value is not None else ""
    stripped = s.lstrip()
    if stripped and stripped[0] in _CSV_FORMULA_PREFIXES:
        return f"'{s}"
    return s


def rows_to_csv(rows: list[dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(_CSV_COLUMNS)
    for row in rows:
        writer.writerow([csv_safe(row.get(k)) for k in _CSV_COLUMNS])
    return buf.getvalue()


@router.get("", response_model=AuditQueryResponse)
async def query_audit_logs(
    action: str | None = Query(None),
    resource_type: str | None = Query(None),
    resource_id: str | None = Query(None),
    actor_type: str | None = Query(None, pattern="^(tenant|automation|system)$"),
    start_time: str | None = Query(None, description="ISO datetime"),
    end_time: str | None = Query(None, description="ISO datetime"),
    limit: int = Query(50, ge=1, le=MAX_QUERY_LIMIT),
    offset: int = Query(0, ge=0),
    tenant: TenantPrincipal = Depends(require_tenant),
    recorder: AuditRecorder = Depends(get_recorder),
):
    """Newest-first page of the caller's audit entries."""
    rows, total = await recorder.query(
        tenant.id,
        limit=limit,
        offset=offset,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        actor_type=actor_type,
        start_time=_parse_datetime(start_time, "start_time"),
        end_time=_parse_datetime(end_time, "end_time"),
    )
    return AuditQueryResponse(
        items=[AuditEntryResponse(**r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/export")
async def export_audit_logs(
    start: str = Query(..., description="ISO datetime, inclusive"),
    end: str = Query(..., description="ISO datetime, inclusive"),
    format: str = Query("json", pattern="^(json|csv)$"),
    tenant: TenantPrincipal = Depends(require_tenant),
    recorder: AuditRecorder = Depends(get_recorder),
):
    """Every entry in ``[start, end]`` in ascending time order."""
    start_dt = _parse_datetime(start, "start")
    end_dt = _parse_datetime(end, "end")
    if end_dt < start_dt:
        raise HTTPException(status_code=422, detail="end must not be before start")

    rows = await recorder.export(tenant.id, start_dt, end_dt)
    logger.info("audit_export", tenant_id=str(tenant.id), rows=len(rows), format=format)

    if format == "csv":
        return StreamingResponse(
            iter([rows_to_csv(rows)]),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=audit_export.csv"},
        )
    return {
        "start": start_dt.isoformat(),
        "end": end_dt.isoformat(),
        "count": len(rows),
        "items": [AuditEntryResponse(**r).model_dump(mode="json") for r in rows],
    }
