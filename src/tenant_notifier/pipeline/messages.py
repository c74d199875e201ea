"""Queue message formats.

Inbound change messages are JSON objects:

    {"changeId": ..., "title": ..., "description": ..., "customerCodes": [...],
     "templateId": ..., "priority": ..., "createdBy": ..., "createdAt": ...,
     "metadata": {...}}

Messages that fail processing are forwarded to the dead-letter queue as:

    {"originalMessage": <raw body>, "error": <message>,
     "timestamp": <RFC 3339>, "processor": <component name>}
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from tenant_notifier.tenants.registry import TenantRegistry, UnknownTenantError


REQUIRED_STRING_FIELDS = ("changeId", "title", "templateId")


class MessageValidationError(ValueError):
    """Raised when a queue message body is malformed or incomplete."""

    pass


def _optional_string(data: Dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise MessageValidationError(f"Field '{key}' must be a string")
    return value


@dataclass(frozen=True)
class ChangeMessage:
    """A validated change-notification request."""

    change_id: str
    title: str
    template_id: str
    customer_codes: Tuple[str, ...]
    description: str = ""
    priority: str = "normal"
    created_by: str = ""
    created_at: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: str) -> "ChangeMessage":
        """Parse and validate a raw message body.

        Args:
            body: JSON text received from the queue

        Returns:
            ChangeMessage with normalized fields

        Raises:
            MessageValidationError: When the body is not valid JSON or a
                                    required field is missing
        """
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise MessageValidationError(f"Message body is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise MessageValidationError("Message body must be a JSON object")

        for key in REQUIRED_STRING_FIELDS:
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise MessageValidationError(f"Required field '{key}' is missing or empty")

        codes = data.get("customerCodes")
        if not isinstance(codes, list) or not codes:
            raise MessageValidationError("Required field 'customerCodes' must be a non-empty list")
        if not all(isinstance(code, str) and code for code in codes):
            raise MessageValidationError("Field 'customerCodes' must contain non-empty strings")

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MessageValidationError("Field 'metadata' must be an object")

        return cls(
            change_id=data["changeId"].strip(),
            title=data["title"],
            template_id=data["templateId"],
            customer_codes=tuple(dict.fromkeys(codes)),
            description=_optional_string(data, "description"),
            priority=_optional_string(data, "priority", "normal") or "normal",
            created_by=_optional_string(data, "createdBy"),
            created_at=_optional_string(data, "createdAt"),
            metadata=metadata,
        )

    def unknown_tenants(self, registry: TenantRegistry) -> List[str]:
        return [code for code in self.customer_codes if code not in registry]

    def validate_tenants(self, registry: TenantRegistry) -> None:
        """Check every customer code is a registered tenant.

        Raises:
            UnknownTenantError: For the first unregistered code
        """
        unknown = self.unknown_tenants(registry)
        if unknown:
            raise UnknownTenantError(unknown[0])


def rfc3339(moment: Optional[datetime] = None) -> str:
    """Format a UTC timestamp as RFC 3339 with a 'Z' suffix."""
    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_dead_letter_body(
    original_body: str,
    error: str,
    processor: str,
    moment: Optional[datetime] = None,
) -> str:
    """Build the dead-letter message body for a failed message."""
    return json.dumps(
        {
            "originalMessage": original_body,
            "error": error,
            "timestamp": rfc3339(moment),
            "processor": processor,
        }
    )
