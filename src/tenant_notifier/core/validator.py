"""Validation primitives for tenant isolation checks.

This module provides the building blocks of the isolation rule engine:
rule categories and severities, the result record each rule produces and
the base class every rule derives from.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ValidationRuleError(Exception):
    """Raised by a rule that cannot evaluate a tenant.

    The isolation validator records it as a failed ValidationResult.
    """

    pass


class ValidationCategory(Enum):
    """Area of the tenant boundary a rule protects."""

    CREDENTIALS = "credentials"
    ACCESS = "access"
    DATA = "data"
    NETWORK = "network"
    AUDIT = "audit"


class ValidationSeverity(Enum):
    """Impact of a failed rule."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


@dataclass
class ValidationResult:
    """Result of a single rule evaluated for one tenant."""

    rule_id: str
    tenant_code: str
    passed: bool
    message: str
    category: ValidationCategory
    severity: ValidationSeverity
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0
    remediation: Optional[str] = None


class ValidationRule(ABC):
    """Base class for all isolation rules.

    Rules are stateless. Anything they need beyond the tenant record is
    injected at construction time.
    """

    rule_id: str = ""
    name: str = ""
    description: str = ""
    category: ValidationCategory = ValidationCategory.AUDIT
    severity: ValidationSeverity = ValidationSeverity.MEDIUM
    remediation: Optional[str] = None

    @abstractmethod
    def check(self, tenant) -> ValidationResult:
        """Evaluate the rule for a tenant.

        Args:
            tenant: TenantAccount to evaluate

        Returns:
            ValidationResult with pass/fail and details

        Raises:
            ValidationRuleError: When the rule cannot be evaluated
        """
        pass

    def result(
        self,
        tenant,
        passed: bool,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> ValidationResult:
        """Build a result carrying this rule's identity."""
        return ValidationResult(
            rule_id=self.rule_id,
            tenant_code=tenant.code,
            passed=passed,
            message=message,
            category=self.category,
            severity=self.severity,
            details=details or {},
            remediation=None if passed else self.remediation,
        )
