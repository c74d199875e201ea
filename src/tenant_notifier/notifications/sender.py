"""Notification rendering and delivery collaborators.

Rich template rendering lives outside this package. The plain-text
renderer and the SES sender here make the pipeline usable end to end.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import boto3

from tenant_notifier.core.aws_client import build_client_config


logger = logging.getLogger(__name__)


class NotificationError(ValueError):
    """Raised when a notification cannot be built or addressed."""

    pass


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    body: str
    recipients: Tuple[str, ...]


class NotificationRenderer(ABC):
    """Turns a change message into a notification for one tenant."""

    @abstractmethod
    def render(self, message, tenant) -> RenderedNotification:
        pass


class PlainTextRenderer(NotificationRenderer):
    """Renders a short plain-text notification addressed to the tenant's recipients."""

    def render(self, message, tenant) -> RenderedNotification:
        recipients = tuple(tenant.recipients)
        if not recipients:
            raise NotificationError(f"Tenant {tenant.code} has no notification recipients")

        lines = [
            message.title,
            "",
            message.description or "No description provided.",
            "",
            f"Change: {message.change_id}",
            f"Priority: {message.priority}",
            f"Template: {message.template_id}",
        ]
        if message.created_by:
            lines.append(f"Requested by: {message.created_by}")

        return RenderedNotification(
            subject=f"[{tenant.name or tenant.code}] {message.title}",
            body="\n".join(lines),
            recipients=recipients,
        )


class NotificationSender(ABC):
    """Delivers a rendered notification."""

    @abstractmethod
    def send(self, subject: str, body: str, recipients: Sequence[str]) -> str:
        """Send a notification.

        Args:
            subject: Subject line
            body: Plain-text body
            recipients: Destination addresses

        Returns:
            Provider message id
        """
        pass


class SesNotificationSender(NotificationSender):
    """Sends notifications through SES using a tenant-scoped session."""

    def __init__(
        self,
        session: boto3.Session,
        source_address: str,
        region_name: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
    ) -> None:
        """Initialize SES sender.

        Args:
            session: boto3 session carrying the tenant's scoped credentials
            source_address: Verified sender address
            region_name: SES region, defaults to the session region
        """
        kwargs = {}
        if region_name:
            kwargs["region_name"] = region_name
        config = build_client_config(connect_timeout, read_timeout)
        if config is not None:
            kwargs["config"] = config
        self._client = session.client("ses", **kwargs)
        self.source_address = source_address

    def send(self, subject: str, body: str, recipients: Sequence[str]) -> str:
        if not recipients:
            raise NotificationError("No recipients given")

        response = self._client.send_email(
            Source=self.source_address,
            Destination={"ToAddresses": list(recipients)},
            Message={
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": body, "Charset": "UTF-8"}},
            },
        )
        message_id = response["MessageId"]
        logger.info(f"Sent notification {message_id} to {len(recipients)} recipient(s)")
        return message_id
