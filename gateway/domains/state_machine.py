"""Custom domain ownership and TLS activation as a pure transition function.

``advance`` looks at a domain record and one observation (what DNS or the
certificate provisioner reported) and returns the transition to apply. It
performs no I/O; the service persists the result with compare-and-set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Union

from gateway.errors import InvalidTransition
from gateway.models.domain import DomainStatus, SslStatus, can_transition

SSL_ISSUED = "issued"
SSL_FAILED = "failed"
SSL_PENDING = "pending"
SSL_EXPIRED = "expired"


@dataclass(frozen=True)
class DnsObservation:
    """TXT values found at the verification record, or the lookup error."""

    values: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class SslObservation:
    state: str
    expires_at: datetime | None = None
    error: str | None = None


Observation = Union[DnsObservation, SslObservation]


@dataclass(frozen=True)
class Transition:
    from_status: str
    to_status: str
    verified: bool
    message: str
    next_steps: tuple[str, ...] = ()
    fields: dict[str, Any] = field(default_factory=dict)
    increment_check: bool = False

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status


def remediation_steps(domain: Mapping[str, Any]) -> tuple[str, ...]:
    return (
        f"Add a TXT record. Name: {domain['verification_record']}, "
        f"Value: {domain['verification_token']}",
        "DNS changes can take up to 48 hours to propagate. Retry verification afterwards.",
    )


def _stay(status: str, verified: bool, message: str, **kwargs: Any) -> Transition:
    return Transition(from_status=status, to_status=status, verified=verified, message=message, **kwargs)


def _move(status: str, target: str, message: str, fields: dict[str, Any], **kwargs: Any) -> Transition:
    if not can_transition(status, target):
        raise InvalidTransition(f"Cannot move domain from {status} to {target}")
    return Transition(
        from_status=status,
        to_status=target,
        verified=target in (DomainStatus.PENDING_SSL.value, DomainStatus.ACTIVE.value),
        message=message,
        fields=fields,
        **kwargs,
    )


_STUCK_MESSAGES = {
    DomainStatus.SUSPENDED.value: "Domain is suspended. Contact support.",
    DomainStatus.VERIFICATION_FAILED.value: "Domain verification failed. Remove the domain and add it again.",
    DomainStatus.SSL_EXPIRED.value: "The SSL certificate for this domain has expired and is awaiting renewal.",
}


def _advance_dns(domain: Mapping[str, Any], obs: DnsObservation, now: datetime) -> Transition:
    status = domain["status"]

    if status == DomainStatus.ACTIVE.value:
        return _stay(status, True, "Domain is already verified and active")
    if status == DomainStatus.PENDING_SSL.value:
        return _stay(status, True, "Domain ownership verified. Waiting for the SSL certificate.")
    if status != DomainStatus.PENDING_VERIFICATION.value:
        return _stay(status, False, _STUCK_MESSAGES.get(status, "Domain cannot be verified"))

    token = domain["verification_token"]
    if obs.error is None and token in obs.values:
        return _move(
            status,
            DomainStatus.PENDING_SSL.value,
            "Domain ownership verified. SSL certificate requested.",
            {
                "verified_at": now,
                "ssl_status": SslStatus.PENDING.value,
                "ssl_requested_at": now,
                "last_check_at": now,
            },
            increment_check=True,
        )

    if obs.error is not None:
        message = f"DNS verification error: {obs.error}"
    elif not obs.values:
        message = "No TXT records found. Please add the verification record."
    else:
        message = "TXT record found but value does not match"
    return _stay(
        status,
        False,
        message,
        next_steps=remediation_steps(domain),
        fields={"last_check_at": now},
        increment_check=True,
    )


def _advance_ssl(domain: Mapping[str, Any], obs: SslObservation, now: datetime) -> Transition:
    status = domain["status"]

    if status == DomainStatus.PENDING_SSL.value:
        if obs.state == SSL_ISSUED:
            return _move(
                status,
                DomainStatus.ACTIVE.value,
                "Domain verified successfully. SSL certificate has been provisioned.",
                {"ssl_status": SslStatus.ACTIVE.value, "ssl_expires_at": obs.expires_at},
            )
        if obs.state == SSL_FAILED:
            return _move(
                status,
                DomainStatus.VERIFICATION_FAILED.value,
                f"SSL certificate could not be issued: {obs.error or 'unknown error'}",
                {"ssl_status": SslStatus.FAILED.value},
            )
        return _stay(status, True, "Domain ownership verified. Waiting for the SSL certificate.")

    if status == DomainStatus.ACTIVE.value:
        if obs.state == SSL_EXPIRED:
            return _move(
                status,
                DomainStatus.SSL_EXPIRED.value,
                "SSL certificate has expired",
                {"ssl_status": SslStatus.EXPIRED.value},
            )
        return _stay(status, True, "Domain is already verified and active")

    if status == DomainStatus.SSL_EXPIRED.value and obs.state in (SSL_PENDING, SSL_ISSUED):
        return _move(
            status,
            DomainStatus.PENDING_SSL.value,
            "SSL certificate renewal requested",
            {"ssl_status": SslStatus.PENDING.value, "ssl_requested_at": now},
        )

    verified = status == DomainStatus.SSL_EXPIRED.value
    return _stay(status, verified, _STUCK_MESSAGES.get(status, "No change"))


def advance(domain: Mapping[str, Any], observation: Observation, now: datetime) -> Transition:
    """Compute the transition *observation* causes for *domain*.

    Idempotent: applying the same observation to the resulting record again
    yields a non-changing transition.
    """
    if isinstance(observation, DnsObservation):
        return _advance_dns(domain, observation, now)
    if isinstance(observation, SslObservation):
        return _advance_ssl(domain, observation, now)
    raise TypeError(f"Unsupported observation: {type(observation).__name__}")
