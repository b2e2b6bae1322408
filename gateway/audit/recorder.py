"""Append-only audit recording for tenant management actions.

``record`` only enqueues; a background loop batch-inserts. Audit failures
must never fail the business operation being audited, so persistence errors
are logged and discarded in ``_flush_batch`` and nowhere else.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog

from gateway.config.audit_actions import ActorType, is_known_action
from gateway.errors import AuditWriteFailed
from gateway.store import audit as audit_store
from gateway.utils.sanitize import clip, strip_control_chars

logger = structlog.get_logger()

_MAX_AUDIT_QUEUE_SIZE = 10_000
_FLUSH_INTERVAL = 0.5     # seconds between flushes
_FLUSH_BATCH_SIZE = 500   # max rows per flush
_MAX_FLUSH_RETRIES = 3    # consecutive failures before rows are dropped

_MAX_UA_LENGTH = 1024
_MAX_IP_LENGTH = 45
_MAX_ID_LENGTH = 255


@dataclass(frozen=True)
class Actor:
    id: str
    type: ActorType

    @classmethod
    def tenant(cls, tenant_id: str | UUID) -> Actor:
        return cls(id=str(tenant_id), type=ActorType.TENANT)

    @classmethod
    def system(cls, name: str = "system") -> Actor:
        return cls(id=name, type=ActorType.SYSTEM)

    @classmethod
    def automation(cls, name: str) -> Actor:
        return cls(id=name, type=ActorType.AUTOMATION)


def _optional(value: str | None, max_length: int) -> str | None:
    if value is None:
        return None
    return clip(strip_control_chars(str(value)), max_length)


class AuditRecorder:
    """Queue-backed audit writer with a background flush loop."""

    def __init__(self, store: Any = audit_store, max_queue_size: int = _MAX_AUDIT_QUEUE_SIZE) -> None:
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._flush_task: asyncio.Task | None = None
        self._shutdown = False
        self._consecutive_failures = 0
        self.entries_dropped = 0

    async def start(self) -> None:
        self._shutdown = False
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info("audit_recorder_started")

    async def stop(self) -> None:
        """Stop the loop and drain whatever is still queued."""
        self._shutdown = True
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        while not self._queue.empty():
            await self._flush_batch()
        logger.info("audit_recorder_stopped", dropped=self.entries_dropped)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def record(
        self,
        tenant_id: str | UUID,
        actor: Actor,
        action: str,
        resource_type: str | None = None,
        resource_id: str | UUID | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Enqueue an entry. Never blocks and never raises for write problems."""
        if not is_known_action(action):
            raise ValueError(f"Unknown audit action: {action!r}")
        entry = {
            "tenant_id": tenant_id if isinstance(tenant_id, UUID) else UUID(str(tenant_id)),
            "actor_id": clip(actor.id, _MAX_ID_LENGTH),
            "actor_type": ActorType(actor.type).value,
            "action": action,
            "resource_type": resource_type,
            "resource_id": _optional(resource_id, _MAX_ID_LENGTH),
            "details": details,
            "ip_address": _optional(ip_address, _MAX_IP_LENGTH),
            "user_agent": _optional(user_agent, _MAX_UA_LENGTH),
            "created_at": datetime.now(timezone.utc),
        }
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.entries_dropped += 1
            logger.error(
                "audit_queue_full",
                error=AuditWriteFailed.code,
                action=action,
                dropped=self.entries_dropped,
            )

    def record_tenant_action(self, tenant_id: str | UUID, action: str, **kwargs: Any) -> None:
        self.record(tenant_id, Actor.tenant(tenant_id), action, **kwargs)

    def record_system_action(self, tenant_id: str | UUID, action: str, **kwargs: Any) -> None:
        self.record(tenant_id, Actor.system(), action, **kwargs)

    async def _flush_loop(self) -> None:
        while not self._shutdown:
            await asyncio.sleep(_FLUSH_INTERVAL)
            await self._flush_batch()

    async def _flush_batch(self) -> None:
        """Drain up to one batch into the store. The only place audit errors are swallowed."""
        rows = []
        while not self._queue.empty() and len(rows) < _FLUSH_BATCH_SIZE:
            try:
                rows.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        if not rows:
            return
        try:
            rejected = await self._store.insert_audit_entries(rows)
            self._consecutive_failures = 0
            if rejected:
                self.entries_dropped += rejected
                logger.error("audit_rows_rejected", rejected=rejected, written=len(rows) - rejected)
        except Exception:
            self._consecutive_failures += 1
            logger.exception(
                "audit_flush_failed",
                error=AuditWriteFailed.code,
                count=len(rows),
                consecutive_failures=self._consecutive_failures,
            )
            if not self._shutdown and self._consecutive_failures < _MAX_FLUSH_RETRIES:
                requeued = 0
                for row in rows:
                    try:
                        self._queue.put_nowait(row)
                        requeued += 1
                    except asyncio.QueueFull:
                        break
                if requeued < len(rows):
                    self.entries_dropped += len(rows) - requeued
                    logger.error("audit_rows_lost", lost=len(rows) - requeued, requeued=requeued)
            else:
                self.entries_dropped += len(rows)
                logger.error(
                    "audit_rows_dropped_max_retries",
                    dropped=len(rows),
                    consecutive_failures=self._consecutive_failures,
                )

    async def flush(self) -> None:
        """Flush everything queued right now."""
        while not self._queue.empty():
            before = self._queue.qsize()
            await self._flush_batch()
            if self._queue.qsize() >= before:
                break

    async def query(
        self,
        tenant_id: str | UUID,
        *,
        limit: int = 50,
        offset: int = 0,
        **filters: Any,
    ) -> tuple[list[dict[str, Any]], int]:
        """Newest-first page of the tenant's entries (limit clamped to 100)."""
        return await self._store.query_audit_entries(
            _as_uuid(tenant_id), limit=limit, offset=offset, **filters,
        )

    async def export(
        self, tenant_id: str | UUID, start: datetime, end: datetime,
    ) -> list[dict[str, Any]]:
        """Entries in the inclusive range ``[start, end]``, oldest first."""
        if end < start:
            raise ValueError("end must not be before start")
        return await self._store.export_audit_entries(_as_uuid(tenant_id), start, end)

    async def purge_older_than(self, tenant_id: str | UUID, days: int) -> int:
        return await self._store.purge_older_than(_as_uuid(tenant_id), days)


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


_recorder: AuditRecorder | None = None


def get_recorder() -> AuditRecorder:
    """Get or create the process-wide recorder."""
    global _recorder
    if _recorder is None:
        _recorder = AuditRecorder()
    return _recorder


def set_recorder(recorder: AuditRecorder | None) -> None:
    global _recorder
    _recorder = recorder
