"""Tenant isolation rules.

Each rule checks one aspect of the tenant boundary and returns a
ValidationResult. Rule ids are stable; dashboards and alerts key off them.
"""

import re
from typing import List, Optional, Sequence, Tuple

from tenant_notifier.core.config import IsolationSettings
from tenant_notifier.core.validator import (
    ValidationCategory,
    ValidationResult,
    ValidationRule,
    ValidationRuleError,
    ValidationSeverity,
)
from tenant_notifier.credentials.models import CredentialError, RoleAssumptionError
from tenant_notifier.tenants.registry import (
    ACCOUNT_ID_PATTERN,
    SERVICE_NOTIFICATION,
    SUPPORTED_SERVICES,
    TenantAccount,
    TenantRegistry,
)
from tenant_notifier.tracking.models import ExecutionQuery


ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-z-]*:iam::(\d{12}):role/([\w+=,.@/-]+)$")
ARN_ACCOUNT_PATTERN = re.compile(r"^arn:aws[a-z-]*:[a-z0-9-]*:[a-z0-9-]*:(\d{12}):")
IDENTIFIER_SEPARATORS = re.compile(r"[:/._]")


def account_from_arn(arn: str) -> Optional[str]:
    """Extract the account id from an ARN, or None when absent."""
    match = ARN_ACCOUNT_PATTERN.match(arn or "")
    return match.group(1) if match else None


def role_name_from_arn(arn: str) -> str:
    """Extract the role name from 'arn:aws:iam::123456789012:role/path/Name'."""
    return (arn or "").rsplit("/", 1)[-1]


def _token_matches(token: str, code: str) -> bool:
    return token == code or token.startswith(f"{code}-")


def foreign_codes_in(identifier: str, tenant_code: str, other_codes: Sequence[str]) -> List[str]:
    """Find other tenants' codes referenced by a resource identifier.

    Identifiers are split on ':', '/', '.' and '_'. A segment references a
    tenant when it equals the code or starts with '<code>-'. Segments that
    also match the owning tenant's code are ignored.
    """
    found = []
    for token in IDENTIFIER_SEPARATORS.split(identifier.lower()):
        if not token or _token_matches(token, tenant_code):
            continue
        for code in other_codes:
            if code != tenant_code and _token_matches(token, code) and code not in found:
                found.append(code)
    return found


def foreign_owners(resource: str, tenant: TenantAccount, registry: TenantRegistry) -> List[str]:
    """Find other tenants that own a resource, by account id or tenant code."""
    owners = []
    for other in registry:
        if other.code == tenant.code:
            continue
        if other.account_id != tenant.account_id and other.account_id in resource:
            owners.append(other.code)
    for code in foreign_codes_in(resource, tenant.code, registry.codes()):
        if code not in owners:
            owners.append(code)
    return owners


class CredentialAccountRule(ValidationRule):
    """Tenant credentials resolve to the tenant's own account."""

    rule_id = "CRED-001"
    name = "Tenant Credential Isolation"
    description = "Verify tenant credentials resolve to the tenant's own account"
    category = ValidationCategory.CREDENTIALS
    severity = ValidationSeverity.CRITICAL
    remediation = "Check the trust policy and account of the tenant's notification role"

    def __init__(self, credential_manager) -> None:
        self.credential_manager = credential_manager

    def check(self, tenant: TenantAccount) -> ValidationResult:
        try:
            credentials = self.credential_manager.get_cached_or_assume(
                tenant.code, SERVICE_NOTIFICATION
            )
            validation = self.credential_manager.validate(credentials)
        except RoleAssumptionError as e:
            details = {"error_code": e.error_code, "transient": e.retryable}
            return self.result(tenant, False, f"Unable to obtain valid credentials: {e}", details)
        except CredentialError as e:
            return self.result(tenant, False, f"Unable to obtain valid credentials: {e}")

        account = validation.account_id or account_from_arn(credentials.assumed_role_arn)
        details = {
            "expected_account": tenant.account_id,
            "actual_account": account,
            "identity_verified": validation.identity_verified,
        }

        if account is None:
            raise ValidationRuleError(
                f"Cannot determine the account behind credentials for {tenant.code}"
            )

        if account != tenant.account_id:
            return self.result(
                tenant,
                False,
                f"Account mismatch: expected {tenant.account_id}, got {account}",
                details,
            )

        details["assumed_role"] = validation.identity_arn or credentials.assumed_role_arn
        return self.result(tenant, True, "Tenant credential isolation verified", details)


class CredentialLifetimeRule(ValidationRule):
    """Cached tenant credentials were issued for an appropriate lifetime."""

    rule_id = "CRED-002"
    name = "Credential Expiration"
    description = "Verify tenant credentials have appropriate expiration times"
    category = ValidationCategory.CREDENTIALS
    severity = ValidationSeverity.MEDIUM
    remediation = "Set the role session duration between the configured bounds"

    def __init__(self, credential_manager, settings: IsolationSettings) -> None:
        self.credential_manager = credential_manager
        self.settings = settings

    def check(self, tenant: TenantAccount) -> ValidationResult:
        checked = {}
        for service in SUPPORTED_SERVICES:
            credentials = self.credential_manager.peek(tenant.code, service)
            if credentials is None:
                continue

            lifetime = credentials.total_lifetime()
            checked[service] = lifetime
            if lifetime > self.settings.max_credential_lifetime_seconds:
                return self.result(
                    tenant,
                    False,
                    f"Credential lifetime for {service} is too long ({lifetime:.0f}s)",
                    {"service": service, "lifetime_seconds": lifetime},
                )
            if lifetime < self.settings.min_credential_lifetime_seconds:
                return self.result(
                    tenant,
                    False,
                    f"Credential lifetime for {service} is too short ({lifetime:.0f}s)",
                    {"service": service, "lifetime_seconds": lifetime},
                )

        return self.result(
            tenant,
            True,
            "Credential expiration times are appropriate",
            {"lifetimes_seconds": checked},
        )


class CrossAccountAccessRule(ValidationRule):
    """Tenant role ARNs belong to the tenant's account."""

    rule_id = "ACCESS-001"
    name = "Cross-Account Access Control"
    description = "Verify tenant role ARNs embed the tenant's own account id"
    category = ValidationCategory.ACCESS
    severity = ValidationSeverity.CRITICAL
    remediation = "Point every tenant role at a role inside the tenant's own account"

    def check(self, tenant: TenantAccount) -> ValidationResult:
        for service, arn in tenant.role_arns().items():
            if not arn.startswith("arn:aws") or ":iam::" not in arn:
                return self.result(
                    tenant,
                    False,
                    f"Invalid {service} role ARN format",
                    {"service": service, "role_arn": arn},
                )
            account = account_from_arn(arn)
            if account != tenant.account_id:
                return self.result(
                    tenant,
                    False,
                    f"{service} role ARN does not belong to account {tenant.account_id}",
                    {"service": service, "role_arn": arn, "role_account": account},
                )

        return self.result(
            tenant,
            True,
            "Cross-account access controls verified",
            {"account_id": tenant.account_id, "role_arns": tenant.role_arns()},
        )


class RolePermissionRule(ValidationRule):
    """Tenant role names avoid over-privileged patterns and carry the tenant code."""

    rule_id = "ACCESS-002"
    name = "Role Permission Boundaries"
    description = "Verify tenant roles are not named as over-privileged and follow naming convention"
    category = ValidationCategory.ACCESS
    severity = ValidationSeverity.HIGH
    remediation = "Use least-privilege roles named after the tenant code"

    def __init__(self, patterns: Sequence[str]) -> None:
        self.patterns = tuple(pattern.lower() for pattern in patterns)

    def check(self, tenant: TenantAccount) -> ValidationResult:
        for service, arn in tenant.role_arns().items():
            role_name = role_name_from_arn(arn)
            lowered = role_name.lower()
            for pattern in self.patterns:
                if pattern in lowered:
                    return self.result(
                        tenant,
                        False,
                        f"Role name contains potentially over-privileged pattern: {pattern}",
                        {
                            "service": service,
                            "role_arn": arn,
                            "role_name": role_name,
                            "pattern": pattern,
                        },
                    )

            if tenant.code not in lowered:
                return self.result(
                    tenant,
                    False,
                    "Role name does not follow the tenant naming convention",
                    {"service": service, "role_arn": arn, "expected_code": tenant.code},
                )

        return self.result(tenant, True, "Role permissions appear appropriately scoped")


class ResourceAccountRule(ValidationRule):
    """Configured resources do not reference other tenants' accounts."""

    rule_id = "DATA-001"
    name = "Tenant Data Segregation"
    description = "Verify configured resources do not reference other tenants' accounts"
    category = ValidationCategory.DATA
    severity = ValidationSeverity.HIGH
    remediation = "Remove resources owned by other tenant accounts from this tenant"

    def __init__(self, registry: TenantRegistry) -> None:
        self.registry = registry

    def check(self, tenant: TenantAccount) -> ValidationResult:
        foreign_accounts = {
            other.account_id: other.code
            for other in self.registry
            if other.code != tenant.code and other.account_id != tenant.account_id
        }

        for resource in tenant.resources:
            for account_id, owner in foreign_accounts.items():
                if account_id in resource:
                    return self.result(
                        tenant,
                        False,
                        f"Resource references account of tenant {owner}",
                        {"resource": resource, "foreign_account": account_id, "owner": owner},
                    )

        return self.result(
            tenant,
            True,
            "Tenant data segregation verified",
            {"resources_checked": len(tenant.resources)},
        )


class ExecutionContextRule(ValidationRule):
    """Resources and tracked executions stay within the tenant's context."""

    rule_id = "DATA-002"
    name = "Execution Context Isolation"
    description = "Verify resources and executions do not reference other tenants"
    category = ValidationCategory.DATA
    severity = ValidationSeverity.HIGH
    remediation = "Remove cross-tenant references and record initiators on executions"

    def __init__(self, registry: TenantRegistry, tracker=None, execution_limit: int = 10) -> None:
        self.registry = registry
        self.tracker = tracker
        self.execution_limit = execution_limit

    def check(self, tenant: TenantAccount) -> ValidationResult:
        other_codes = [code for code in self.registry.codes() if code != tenant.code]

        for resource in tenant.resources:
            foreign = foreign_codes_in(resource, tenant.code, other_codes)
            if foreign:
                return self.result(
                    tenant,
                    False,
                    f"Resource references other tenant(s): {', '.join(foreign)}",
                    {"resource": resource, "foreign_tenants": foreign},
                )

        executions = []
        if self.tracker is not None:
            executions = self.tracker.query_executions(
                ExecutionQuery(tenant_code=tenant.code, limit=self.execution_limit)
            )

        for execution in executions:
            if tenant.code not in execution.customers:
                raise ValidationRuleError(
                    f"Execution {execution.execution_id} returned for {tenant.code} without its status"
                )
            if not execution.initiator:
                return self.result(
                    tenant,
                    False,
                    "Execution missing initiator information",
                    {"execution_id": execution.execution_id},
                )

        return self.result(
            tenant,
            True,
            "Execution context isolation verified",
            {"resources_checked": len(tenant.resources), "executions_checked": len(executions)},
        )


class AuditFieldsRule(ValidationRule):
    """Audit-relevant tenant fields are present and well-formed."""

    rule_id = "AUDIT-001"
    name = "Audit Trail Isolation"
    description = "Verify account id and role ARNs are present and well-formed"
    category = ValidationCategory.AUDIT
    severity = ValidationSeverity.MEDIUM
    remediation = "Correct the tenant's account id and role ARNs in configuration"

    def check(self, tenant: TenantAccount) -> ValidationResult:
        problems: List[Tuple[str, str]] = []

        if not ACCOUNT_ID_PATTERN.match(tenant.account_id or ""):
            problems.append(("account_id", tenant.account_id))
        if not tenant.notification_role_arn:
            problems.append(("notification_role_arn", ""))

        for service, arn in tenant.role_arns().items():
            if not ROLE_ARN_PATTERN.match(arn):
                problems.append((f"{service}_role_arn", arn))

        if problems:
            fields = ", ".join(name for name, _ in problems)
            return self.result(
                tenant,
                False,
                f"Malformed or missing audit fields: {fields}",
                {"fields": dict(problems)},
            )

        return self.result(tenant, True, "Audit fields present and well-formed")


class RegionRule(ValidationRule):
    """Tenant region is an allowed region."""

    rule_id = "NETWORK-001"
    name = "Network Isolation"
    description = "Verify the tenant's configured region is allowed"
    category = ValidationCategory.NETWORK
    severity = ValidationSeverity.MEDIUM
    remediation = "Move the tenant to an allowed region or extend the allow list"

    def __init__(self, allowed_regions: Sequence[str]) -> None:
        self.allowed_regions = tuple(allowed_regions)

    def check(self, tenant: TenantAccount) -> ValidationResult:
        if not tenant.region:
            return self.result(tenant, False, "Tenant region not specified")

        if tenant.region not in self.allowed_regions:
            return self.result(
                tenant,
                False,
                f"Region {tenant.region} is not an allowed region",
                {"region": tenant.region, "allowed_regions": list(self.allowed_regions)},
            )

        return self.result(tenant, True, "Network isolation verified", {"region": tenant.region})


def default_rules(
    registry: TenantRegistry,
    credential_manager,
    settings: IsolationSettings,
    tracker=None,
) -> List[ValidationRule]:
    """Build the process-wide rule battery in evaluation order."""
    return [
        CredentialAccountRule(credential_manager),
        CrossAccountAccessRule(),
        ResourceAccountRule(registry),
        RolePermissionRule(settings.privileged_role_patterns),
        AuditFieldsRule(),
        RegionRule(settings.allowed_regions),
        CredentialLifetimeRule(credential_manager, settings),
        ExecutionContextRule(registry, tracker),
    ]
