"""Custom domain lifecycle: registration, DNS ownership proof, SSL activation.

Status changes are computed by :func:`gateway.domains.state_machine.advance`
and persisted with ``claim_and_update`` so that concurrent verify calls (or a
verify racing the SSL poller) perform each transition exactly once.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol
from uuid import UUID

import structlog

from gateway.config import audit_actions
from gateway.config.plans import PlanTable, get_plan_table
from gateway.domains.dns import DnsLookupError, TxtResolver
from gateway.domains.state_machine import (
    SSL_FAILED,
    SSL_EXPIRED,
    SSL_ISSUED,
    DnsObservation,
    SslObservation,
    Transition,
    advance,
)
from gateway.errors import (
    DNSVerificationFailed,
    DomainAlreadyRegistered,
    DomainLimitReached,
    DomainNotFound,
    InvalidTransition,
)
from gateway.models.domain import DomainStatus, can_transition, normalize_hostname, validate_hostname
from gateway.store import domains as domain_store

logger = structlog.get_logger()

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
_TOKEN_LENGTH = 32

DEFAULT_CERT_LIFETIME_DAYS = 90


class SslProvisioner(Protocol):
    async def request(self, hostname: str) -> SslObservation: ...

    async def status(self, hostname: str) -> SslObservation: ...


class ImmediateSslProvisioner:
    """Reports every certificate as issued on request.

    Stands in for a certificate authority integration; edge TLS is assumed to
    be terminated by the hosting platform.
    """

    def __init__(self, lifetime_days: int = DEFAULT_CERT_LIFETIME_DAYS, now: Callable[[], datetime] | None = None) -> None:
        self._lifetime = timedelta(days=lifetime_days)
        self._now = now or _utcnow

    async def request(self, hostname: str) -> SslObservation:
        return SslObservation(state=SSL_ISSUED, expires_at=self._now() + self._lifetime)

    async def status(self, hostname: str) -> SslObservation:
        return await self.request(hostname)


@dataclass
class VerifyResult:
    verified: bool
    status: str
    message: str
    domain: dict[str, Any]
    next_steps: list[str] = field(default_factory=list)
    code: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_verification_token(product_name: str) -> str:
    suffix = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(_TOKEN_LENGTH))
    return f"{product_name}-verify-{suffix}"


def verification_record_name(product_name: str, hostname: str) -> str:
    return f"_{product_name}-verification.{hostname}"


class DomainTrustService:
    """Operations on tenant custom domains.

    Collaborators are injected: the TXT resolver, the SSL provisioner, the
    plan table, the audit recorder and the store module.
    """

    def __init__(
        self,
        *,
        resolver: TxtResolver,
        provisioner: SslProvisioner | None = None,
        product_name: str = "mcp",
        platform_base_domains: list[str] | tuple[str, ...] = (),
        ssl_mode: str = "sync",
        ssl_timeout_hours: int = 72,
        plans: PlanTable | None = None,
        audit: Any = None,
        store: Any = domain_store,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._resolver = resolver
        self._provisioner = provisioner or ImmediateSslProvisioner(now=now)
        self._product = product_name
        self._base_domains = tuple(platform_base_domains)
        self._ssl_mode = ssl_mode
        self._ssl_timeout = timedelta(hours=ssl_timeout_hours)
        self._plans = plans
        self._audit = audit
        self._store = store
        self._now = now

    @property
    def plans(self) -> PlanTable:
        return self._plans or get_plan_table()

    def _record(self, tenant_id: Any, action: str, domain: dict[str, Any], *, system: bool = False, **details: Any) -> None:
        if self._audit is None:
            return
        record = self._audit.record_system_action if system else self._audit.record_tenant_action
        record(
            tenant_id,
            action,
            resource_type="custom_domain",
            resource_id=str(domain["id"]),
            details={"hostname": domain["hostname"], **details},
        )

    # --- Registration ---

    async def create(self, tenant_id: UUID, hostname: str, plan: str | None) -> dict[str, Any]:
        """Register *hostname* for *tenant_id* in ``pending_verification``."""
        normalized = validate_hostname(hostname, self._base_domains)

        limits = self.plans.get_limit(plan)
        current = await self._store.count_domains(tenant_id)
        if not limits.allows_more_domains(current):
            logger.info("domain_limit_reached", tenant_id=str(tenant_id), plan=limits.plan, current=current)
            if limits.max_domains == 0:
                raise DomainLimitReached(
                    "Custom domains are not available on your plan. Upgrade to Business or Enterprise."
                )
            raise DomainLimitReached(
                f"Custom domain limit reached ({limits.max_domains}) for your plan"
            )

        if await self._store.hostname_exists(normalized):
            raise DomainAlreadyRegistered()

        domain = await self._store.create_domain(
            tenant_id,
            hostname=normalized,
            verification_token=generate_verification_token(self._product),
            verification_record=verification_record_name(self._product, normalized),
        )
        logger.info("domain_created", tenant_id=str(tenant_id), domain_id=str(domain["id"]), hostname=normalized)
        self._record(tenant_id, audit_actions.DOMAIN_CREATE, domain)
        return domain

    # --- Reads ---

    async def get(self, tenant_id: UUID, domain_id: UUID) -> dict[str, Any]:
        domain = await self._store.get_domain(tenant_id, domain_id)
        if domain is None:
            raise DomainNotFound()
        return domain

    async def list(self, tenant_id: UUID) -> list[dict[str, Any]]:
        return await self._store.list_domains(tenant_id)

    async def get_active_by_hostname(self, hostname: str) -> dict[str, Any] | None:
        """Routing lookup: only ``active`` domains resolve."""
        return await self._store.get_active_by_hostname(normalize_hostname(hostname))

    # --- Verification ---

    async def _observe_dns(self, domain: dict[str, Any]) -> DnsObservation:
        try:
            values = await self._resolver.lookup_txt(domain["verification_record"])
        except DnsLookupError as exc:
            logger.warning("domain_dns_lookup_failed", domain_id=str(domain["id"]), error=str(exc))
            return DnsObservation(error=str(exc))
        return DnsObservation(values=tuple(values))

    async def _apply(self, domain: dict[str, Any], transition: Transition) -> dict[str, Any] | None:
        """Persist a changing transition. Returns None if another caller won."""
        return await self._store.claim_and_update(
            domain["id"],
            expected_status=transition.from_status,
            new_status=transition.to_status,
            increment_check=transition.increment_check,
            **transition.fields,
        )

    def _report(self, domain: dict[str, Any]) -> VerifyResult:
        """Describe a domain's current state without checking anything."""
        status = domain["status"]
        if status == DomainStatus.PENDING_VERIFICATION.value:
            return VerifyResult(
                verified=False,
                status=status,
                message="Domain is awaiting DNS verification",
                domain=domain,
            )
        transition = advance(domain, DnsObservation(), self._now())
        return VerifyResult(verified=transition.verified, status=status, message=transition.message, domain=domain)

    def _ssl_result(self, domain: dict[str, Any], transition: Transition) -> VerifyResult:
        if transition.changed and domain["status"] == transition.to_status:
            return VerifyResult(
                verified=transition.verified,
                status=domain["status"],
                message=transition.message,
                domain=domain,
            )
        return self._report(domain)

    async def _activate(
        self, tenant_id: Any, domain: dict[str, Any], observation: SslObservation, *, system: bool = False,
    ) -> tuple[dict[str, Any], Transition]:
        transition = advance(domain, observation, self._now())
        if not transition.changed:
            return domain, transition
        updated = await self._apply(domain, transition)
        if updated is None:
            current = await self._store.get_domain(tenant_id, domain["id"]) or domain
            return current, transition
        if transition.to_status == DomainStatus.ACTIVE.value:
            logger.info("domain_activated", domain_id=str(domain["id"]), hostname=domain["hostname"])
            self._record(tenant_id, audit_actions.DOMAIN_ACTIVATE, updated, system=system)
        elif transition.to_status == DomainStatus.VERIFICATION_FAILED.value:
            logger.warning("domain_ssl_failed", domain_id=str(domain["id"]), error=observation.error)
            self._record(tenant_id, audit_actions.DOMAIN_VERIFY_FAILED, updated, system=system, reason="ssl_failed")
        return updated, transition

    async def verify(self, tenant_id: UUID, domain_id: UUID) -> VerifyResult:
        """Check DNS ownership and advance the domain as far as it can go."""
        domain = await self.get(tenant_id, domain_id)
        status = domain["status"]

        if status == DomainStatus.PENDING_SSL.value:
            if self._ssl_mode == "sync":
                observation = await self._provisioner.status(domain["hostname"])
                return self._ssl_result(*await self._activate(tenant_id, domain, observation))
            return self._report(domain)

        if status != DomainStatus.PENDING_VERIFICATION.value:
            # active, suspended, failed, expired: nothing to re-check
            return self._report(domain)

        observation = await self._observe_dns(domain)
        transition = advance(domain, observation, self._now())

        if not transition.changed:
            updated = await self._store.record_check(tenant_id, domain_id, self._now()) or domain
            logger.info(
                "domain_verify_no_match",
                domain_id=str(domain_id),
                check_count=updated.get("check_count"),
                dns_error=observation.error,
            )
            self._record(tenant_id, audit_actions.DOMAIN_VERIFY_FAILED, updated, reason=transition.message)
            return VerifyResult(
                verified=False,
                status=transition.to_status,
                message=transition.message,
                next_steps=list(transition.next_steps),
                domain=updated,
                code=DNSVerificationFailed.code,
            )

        updated = await self._apply(domain, transition)
        if updated is None:
            # Lost the race: another caller already moved this domain. The lookup still counts as a check.
            current = await self._store.record_check(tenant_id, domain_id, self._now())
            if current is None:
                current = await self.get(tenant_id, domain_id)
            logger.info("domain_verify_already_claimed", domain_id=str(domain_id), status=current["status"])
            return self._report(current)

        logger.info("domain_verified", domain_id=str(domain_id), hostname=domain["hostname"])
        self._record(tenant_id, audit_actions.DOMAIN_VERIFY, updated)

        observation = await self._provisioner.request(updated["hostname"])
        if self._ssl_mode == "sync":
            return self._ssl_result(*await self._activate(tenant_id, updated, observation))
        return VerifyResult(
            verified=True, status=updated["status"], message=transition.message, domain=updated,
        )

    async def refresh(self, tenant_id: UUID, domain_id: UUID) -> dict[str, Any]:
        """Re-run verification if still pending, then return the current record."""
        domain = await self.get(tenant_id, domain_id)
        if domain["status"] in (DomainStatus.PENDING_VERIFICATION.value, DomainStatus.PENDING_SSL.value):
            await self.verify(tenant_id, domain_id)
        return await self.get(tenant_id, domain_id)

    # --- Administrative ---

    async def suspend(self, domain_id: UUID, reason: str = "") -> dict[str, Any]:
        domain = await self._store.get_domain_unscoped(domain_id)
        if domain is None:
            raise DomainNotFound()
        status = domain["status"]
        if not can_transition(status, DomainStatus.SUSPENDED.value):
            raise InvalidTransition(f"Cannot suspend a domain in status {status}")
        updated = await self._store.claim_and_update(
            domain_id, expected_status=status, new_status=DomainStatus.SUSPENDED.value,
        )
        if updated is None:
            raise InvalidTransition("Domain changed state concurrently, retry")
        logger.warning("domain_suspended", domain_id=str(domain_id), previous_status=status)
        self._record(domain["tenant_id"], audit_actions.DOMAIN_SUSPEND, updated, system=True, reason=reason)
        return updated

    async def delete(self, tenant_id: UUID, domain_id: UUID) -> None:
        deleted = await self._store.delete_domain(tenant_id, domain_id)
        if deleted is None:
            raise DomainNotFound()
        logger.info("domain_deleted", tenant_id=str(tenant_id), domain_id=str(domain_id))
        self._record(tenant_id, audit_actions.DOMAIN_DELETE, deleted)

    # --- Background (SSL poller) ---

    def _ssl_timed_out(self, domain: dict[str, Any]) -> bool:
        started = domain.get("ssl_requested_at") or domain.get("verified_at") or domain.get("updated_at")
        if started is None:
            return False
        if isinstance(started, str):
            started = datetime.fromisoformat(started)
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return self._now() - started > self._ssl_timeout

    async def check_pending_ssl(self, domain: dict[str, Any]) -> dict[str, Any]:
        """Advance one ``pending_ssl`` domain from the provisioner's status."""
        if self._ssl_timed_out(domain):
            observation = SslObservation(state=SSL_FAILED, error="certificate issuance timed out")
        else:
            observation = await self._provisioner.status(domain["hostname"])
        updated, _ = await self._activate(domain["tenant_id"], domain, observation, system=True)
        return updated

    async def expire_certificates(self) -> int:
        """Move ``active`` domains with a lapsed certificate to ``ssl_expired``."""
        now = self._now()
        moved = 0
        for domain in await self._store.list_expired_active(now):
            transition = advance(domain, SslObservation(state=SSL_EXPIRED), now)
            if not transition.changed:
                continue
            updated = await self._apply(domain, transition)
            if updated is None:
                continue
            moved += 1
            logger.warning("domain_ssl_expired", domain_id=str(domain["id"]), hostname=domain["hostname"])
            self._record(domain["tenant_id"], audit_actions.DOMAIN_SSL_EXPIRED, updated, system=True)
        return moved
