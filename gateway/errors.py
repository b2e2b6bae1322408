"""Gateway error taxonomy.

Each error carries the HTTP status and machine-readable code the API layer
translates it into. Messages are safe to return to callers.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors surfaced to gateway callers."""

    status_code: int = 400
    code: str = "GATEWAY_ERROR"
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class NoCredentials(GatewayError):
    """No credential source applied to the request."""

    status_code = 401
    code = "NO_CREDENTIALS"
    default_message = (
        "No upstream credentials provided. Send an API key as "
        "'Authorization: Bearer <key>', or x-upstream-url, x-upstream-username "
        "and x-upstream-password headers."
    )


class InvalidCredentials(GatewayError):
    """A credential source was identified but failed validation.

    The message is identical for every failing stage.
    """

    status_code = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid or revoked credentials"


class DecryptionFailed(GatewayError):
    """Envelope could not be decrypted (wrong key or tampered data)."""

    status_code = 500
    code = "DECRYPTION_FAILED"
    default_message = "Stored secret could not be decrypted"


class TokenInvalid(GatewayError):
    """Token failed verification (any reason)."""

    status_code = 401
    code = "TOKEN_INVALID"
    default_message = "Invalid or expired token"


class RateLimited(GatewayError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Rate limit exceeded"

    def __init__(self, message: str | None = None, retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DomainValidationFailed(GatewayError):
    status_code = 422
    code = "DOMAIN_VALIDATION_FAILED"
    default_message = "Invalid domain"


class DomainAlreadyRegistered(GatewayError):
    status_code = 409
    code = "DOMAIN_ALREADY_REGISTERED"
    default_message = "Domain is already registered"


class DomainNotFound(GatewayError):
    status_code = 404
    code = "DOMAIN_NOT_FOUND"
    default_message = "Domain not found"


class DomainLimitReached(GatewayError):
    status_code = 403
    code = "DOMAIN_LIMIT_REACHED"
    default_message = "Custom domain limit reached for your plan"


class InvalidTransition(GatewayError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_message = "Domain cannot move to the requested state"


class DNSVerificationFailed(GatewayError):
    """The expected TXT record was missing or did not match.

    Never raised: a failed check is an expected outcome, reported through
    the verify result's ``code`` alongside its remediation steps.
    """

    status_code = 200
    code = "DNS_VERIFICATION_FAILED"
    default_message = "DNS verification failed"


class AuditWriteFailed(GatewayError):
    """Audit entry could not be persisted. Logged, never propagated."""

    status_code = 500
    code = "AUDIT_WRITE_FAILED"
    default_message = "Audit entry could not be written"


class ConnectionLimitReached(GatewayError):
    status_code = 403
    code = "CONNECTION_LIMIT_REACHED"
    default_message = "Connection limit reached for your plan"


class ResourceNotFound(GatewayError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"
