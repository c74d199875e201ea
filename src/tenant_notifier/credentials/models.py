"""Credential records and errors for tenant role assumption."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class CredentialError(Exception):
    """Base exception for credential isolation operations."""

    pass


class RoleAssumptionError(CredentialError):
    """Raised when a tenant role cannot be assumed.

    Attributes:
        tenant_code: Tenant the role belongs to
        service: Canonical service name
        role_arn: Role that was requested, if known
        error_code: AWS error code, if the failure came from STS
        retryable: False when the identity provider denied the request
    """

    def __init__(
        self,
        message: str,
        tenant_code: str = "",
        service: str = "",
        role_arn: str = "",
        error_code: str = "",
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.tenant_code = tenant_code
        self.service = service
        self.role_arn = role_arn
        self.error_code = error_code
        self.retryable = retryable


class CredentialValidationError(CredentialError):
    """Raised when scoped credentials fail validation.

    The cached entry for the credentials is evicted before this is raised.
    """

    def __init__(self, message: str, result: Optional["CredentialValidationResult"] = None) -> None:
        super().__init__(message)
        self.result = result


def cache_key(tenant_code: str, service: str) -> str:
    """Build the credential cache key '<tenant>:<service>'."""
    return f"{tenant_code}:{service}"


@dataclass(frozen=True)
class ScopedCredentials:
    """Short-lived credentials scoped to one tenant and service."""

    tenant_code: str
    service: str
    role_arn: str
    region: str
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    assumed_role_arn: str = ""
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def cache_key(self) -> str:
        return cache_key(self.tenant_code, self.service)

    def remaining_lifetime(self, now: Optional[datetime] = None) -> float:
        """Get the seconds left before expiration (negative once expired)."""
        now = now or datetime.now(timezone.utc)
        return (self.expiration - now).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.remaining_lifetime(now) <= 0

    def total_lifetime(self) -> float:
        """Get the lifetime granted by STS in seconds."""
        return (self.expiration - self.issued_at).total_seconds()


@dataclass
class CredentialValidationResult:
    """Outcome of validating scoped credentials."""

    tenant_code: str
    service: str
    valid: bool
    expires_at: Optional[datetime] = None
    remaining_seconds: float = 0.0
    account_id: Optional[str] = None
    identity_arn: Optional[str] = None
    identity_verified: bool = False
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None
