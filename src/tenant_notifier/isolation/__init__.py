"""Tenant isolation package.

Contains the isolation rules and the validator that runs them.
"""

from tenant_notifier.isolation.rules import default_rules
from tenant_notifier.isolation.validator import (
    AccessAttempt,
    IsolationValidator,
    TenantIsolationReport,
)

__all__ = ['AccessAttempt', 'IsolationValidator', 'TenantIsolationReport', 'default_rules']
