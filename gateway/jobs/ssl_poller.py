"""SSL poller: background job that finishes domain activation.

Every ``poll_interval`` seconds it asks the provisioner about each
``pending_ssl`` domain (issued → ``active``, failed or older than the
timeout → ``verification_failed``) and moves ``active`` domains whose
certificate lapsed to ``ssl_expired``.

Transitions go through ``claim_and_update``, so several poller instances,
or a poller racing a tenant's verify call, never apply one twice.
"""

from __future__ import annotations

import asyncio

import structlog

from gateway.domains.service import DomainTrustService
from gateway.store import domains as domain_store

logger = structlog.get_logger()

DEFAULT_POLL_INTERVAL = 60

# Minimum poll interval to prevent tight loops (seconds)
_MIN_POLL_INTERVAL = 10


async def poll_once(service: DomainTrustService, *, store=domain_store, shutdown_event: asyncio.Event | None = None) -> dict[str, int]:
    """Run one polling pass. Returns counts for logging and tests."""
    checked = 0
    changed = 0
    for domain in await store.list_pending_ssl():
        if shutdown_event is not None and shutdown_event.is_set():
            break
        checked += 1
        updated = await service.check_pending_ssl(domain)
        if updated.get("status") != domain["status"]:
            changed += 1
            logger.info(
                "ssl_poller_status_updated",
                domain_id=str(domain["id"]),
                new_status=updated.get("status"),
            )
    expired = await service.expire_certificates()
    return {"checked": checked, "changed": changed, "expired": expired}


async def run_ssl_poller(
    service: DomainTrustService,
    *,
    poll_interval: int = DEFAULT_POLL_INTERVAL,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the poller until *shutdown_event* is set."""
    poll_interval = max(_MIN_POLL_INTERVAL, poll_interval)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info("ssl_poller_started", poll_interval=poll_interval)

    while not shutdown_event.is_set():
        try:
            counts = await poll_once(service, shutdown_event=shutdown_event)
            if counts["changed"] or counts["expired"]:
                logger.info("ssl_poller_pass_complete", **counts)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("ssl_poller_error")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("ssl_poller_stopped")
