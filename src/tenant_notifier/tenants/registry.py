"""Tenant registry.

Tenants are loaded once from configuration and are read-only afterwards,
so lookups need no locking.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple


logger = logging.getLogger(__name__)

TENANT_CODE_PATTERN = re.compile(r"^[a-z0-9-]{1,20}$")
ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")

SERVICE_NOTIFICATION = "notification"
SERVICE_QUEUE = "queue"
SERVICE_STORAGE = "storage"
SUPPORTED_SERVICES = (SERVICE_NOTIFICATION, SERVICE_QUEUE, SERVICE_STORAGE)

_SERVICE_ALIASES = {
    "notification": SERVICE_NOTIFICATION,
    "ses": SERVICE_NOTIFICATION,
    "email": SERVICE_NOTIFICATION,
    "queue": SERVICE_QUEUE,
    "sqs": SERVICE_QUEUE,
    "storage": SERVICE_STORAGE,
    "s3": SERVICE_STORAGE,
}


class TenantRegistryError(Exception):
    """Raised when tenant configuration cannot be loaded."""

    pass


class UnknownTenantError(Exception):
    """Raised when a tenant code is not registered."""

    def __init__(self, tenant_code: str) -> None:
        super().__init__(f"Unknown tenant: {tenant_code}")
        self.tenant_code = tenant_code


def normalize_service(service: str) -> Optional[str]:
    """Map a service name or alias to its canonical name.

    Returns:
        Canonical service name, or None for unsupported services
    """
    if not isinstance(service, str):
        return None
    return _SERVICE_ALIASES.get(service.strip().lower())


@dataclass(frozen=True)
class TenantAccount:
    """An isolated customer account and its per-service roles."""

    code: str
    account_id: str
    region: str
    notification_role_arn: str
    name: str = ""
    queue_role_arn: str = ""
    storage_role_arn: str = ""
    environment: str = "prod"
    resources: Tuple[str, ...] = field(default_factory=tuple)
    recipients: Tuple[str, ...] = field(default_factory=tuple)

    def role_arn_for(self, service: str) -> str:
        """Get the role ARN configured for a service.

        Args:
            service: Service name or alias (e.g., 'notification', 'ses')

        Returns:
            Role ARN, or an empty string when the service has no role

        Raises:
            ValueError: When the service is not supported
        """
        canonical = normalize_service(service)
        if canonical == SERVICE_NOTIFICATION:
            return self.notification_role_arn
        if canonical == SERVICE_QUEUE:
            return self.queue_role_arn
        if canonical == SERVICE_STORAGE:
            return self.storage_role_arn
        raise ValueError(f"Unsupported service: {service}")

    def role_arns(self) -> Dict[str, str]:
        """Get every configured role ARN keyed by service."""
        arns = {}
        for service in SUPPORTED_SERVICES:
            arn = self.role_arn_for(service)
            if arn:
                arns[service] = arn
        return arns


class TenantRegistry:
    """Read-only collection of tenant accounts keyed by tenant code."""

    def __init__(self, tenants: Optional[List[TenantAccount]] = None) -> None:
        self._tenants: Dict[str, TenantAccount] = {}
        for tenant in tenants or []:
            if tenant.code in self._tenants:
                raise TenantRegistryError(f"Duplicate tenant code: {tenant.code}")
            self._tenants[tenant.code] = tenant

    @classmethod
    def from_config(
        cls, mapping: Dict[str, Dict[str, Any]], default_region: str = ""
    ) -> "TenantRegistry":
        """Build a registry from the 'tenants' configuration section.

        Args:
            mapping: Tenant settings keyed by tenant code
            default_region: Region used when a tenant does not declare one

        Returns:
            Populated TenantRegistry

        Raises:
            TenantRegistryError: When a tenant entry is invalid
        """
        tenants = []
        for code, entry in (mapping or {}).items():
            tenants.append(_tenant_from_entry(str(code), entry, default_region))

        logger.info(f"Loaded {len(tenants)} tenant(s): {', '.join(sorted(t.code for t in tenants))}")
        return cls(tenants)

    def get(self, code: str) -> TenantAccount:
        """Get a tenant by code.

        Raises:
            UnknownTenantError: When the tenant is not registered
        """
        try:
            return self._tenants[code]
        except (KeyError, TypeError):
            raise UnknownTenantError(code)

    def codes(self) -> List[str]:
        return sorted(self._tenants)

    def __contains__(self, code: object) -> bool:
        return code in self._tenants

    def __len__(self) -> int:
        return len(self._tenants)

    def __iter__(self) -> Iterator[TenantAccount]:
        return iter([self._tenants[code] for code in self.codes()])


def _tenant_from_entry(code: str, entry: Any, default_region: str) -> TenantAccount:
    if not TENANT_CODE_PATTERN.match(code):
        raise TenantRegistryError(
            f"Invalid tenant code '{code}': use 1-20 lowercase letters, digits or hyphens"
        )
    if not isinstance(entry, dict):
        raise TenantRegistryError(f"Tenant '{code}' must be a mapping")

    account_id = str(entry.get("account_id", "") or "")
    if not account_id:
        raise TenantRegistryError(f"Tenant '{code}' is missing 'account_id'")

    roles = entry.get("roles", {}) or {}
    if not isinstance(roles, dict):
        raise TenantRegistryError(f"Tenant '{code}' roles must be a mapping")

    notification_role = roles.get("notification", "") or ""
    if not notification_role:
        raise TenantRegistryError(f"Tenant '{code}' is missing 'roles.notification'")

    region = entry.get("region") or default_region
    if not region:
        raise TenantRegistryError(f"Tenant '{code}' has no region and no default region")

    return TenantAccount(
        code=code,
        name=str(entry.get("name", code)),
        account_id=account_id,
        region=region,
        notification_role_arn=notification_role,
        queue_role_arn=roles.get("queue", "") or "",
        storage_role_arn=roles.get("storage", "") or "",
        environment=str(entry.get("environment", "prod")),
        resources=tuple(str(item) for item in entry.get("resources", []) or []),
        recipients=tuple(str(item) for item in entry.get("recipients", []) or []),
    )
