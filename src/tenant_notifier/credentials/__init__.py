"""Credential isolation package.

Assumes per-tenant, per-service roles and caches the scoped credentials.
"""

from tenant_notifier.credentials.manager import CredentialIsolationManager
from tenant_notifier.credentials.models import (
    CredentialError,
    CredentialValidationError,
    CredentialValidationResult,
    RoleAssumptionError,
    ScopedCredentials,
    cache_key,
)

__all__ = [
    'CredentialIsolationManager',
    'CredentialError',
    'CredentialValidationError',
    'CredentialValidationResult',
    'RoleAssumptionError',
    'ScopedCredentials',
    'cache_key',
]
