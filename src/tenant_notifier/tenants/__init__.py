"""Tenant registry package.

Holds the immutable tenant accounts loaded from configuration.
"""

from tenant_notifier.tenants.registry import (
    SUPPORTED_SERVICES,
    TenantAccount,
    TenantRegistry,
    TenantRegistryError,
    UnknownTenantError,
    normalize_service,
)

__all__ = [
    'SUPPORTED_SERVICES',
    'TenantAccount',
    'TenantRegistry',
    'TenantRegistryError',
    'UnknownTenantError',
    'normalize_service',
]
