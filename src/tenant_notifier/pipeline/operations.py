"""Tenant operations executed by pipeline workers.

A TenantOperation performs the actual work for one tenant of a change
message. It runs inside a TenantOperationContext that records steps in the
execution tracker, hands out tenant-scoped sessions and enforces the
cross-tenant access check.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import boto3

from tenant_notifier.isolation.rules import foreign_owners
from tenant_notifier.notifications.sender import (
    NotificationRenderer,
    NotificationSender,
    PlainTextRenderer,
    SesNotificationSender,
)
from tenant_notifier.resilience.controller import ErrorCategory, ProcessingError
from tenant_notifier.tenants.registry import SERVICE_NOTIFICATION, TenantAccount
from tenant_notifier.tracking.models import StepState


logger = logging.getLogger(__name__)


class TenantOperationContext:
    """Everything a tenant operation may touch while processing a message."""

    def __init__(
        self,
        message,
        tenant: TenantAccount,
        execution_id: str,
        tracker,
        credential_manager,
        isolation_validator,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.message = message
        self.tenant = tenant
        self.execution_id = execution_id
        self.tracker = tracker
        self.credential_manager = credential_manager
        self.isolation_validator = isolation_validator
        self.cancel_event = cancel_event or threading.Event()
        self._step_count = 0
        self._lock = threading.Lock()

    @contextmanager
    def step(self, name: str, description: str = "") -> Iterator[str]:
        """Record a tracked step around a block of work.

        The step is Running while the block executes and ends Completed, or
        Failed with the error message when the block raises.

        Yields:
            The generated step id
        """
        with self._lock:
            self._step_count += 1
            step_id = f"step-{self._step_count:02d}-{name}"

        self.tracker.add_execution_step(
            self.execution_id, self.tenant.code, step_id, name, description
        )
        self.tracker.update_execution_step(
            self.execution_id, self.tenant.code, step_id, StepState.RUNNING
        )
        try:
            yield step_id
        except Exception as e:
            self.tracker.update_execution_step(
                self.execution_id, self.tenant.code, step_id, StepState.FAILED, str(e)
            )
            raise
        self.tracker.update_execution_step(
            self.execution_id, self.tenant.code, step_id, StepState.COMPLETED
        )

    def session(self, service: str) -> boto3.Session:
        """Get a session carrying only this tenant's credentials for a service."""
        return self.credential_manager.session_for(self.tenant.code, service)

    def check_access(self, resource: str, access_type: str = "read") -> None:
        """Enforce that a resource does not belong to another tenant.

        Raises:
            ProcessingError: When access to another tenant's resource is blocked
        """
        for owner in foreign_owners(resource, self.tenant, self.credential_manager.registry):
            attempt = self.isolation_validator.detect_cross_customer_access(
                self.tenant.code, owner, access_type, resource
            )
            if attempt.blocked:
                raise ProcessingError(
                    f"Blocked {access_type} access from {self.tenant.code} to {owner} resource {resource}",
                    retryable=False,
                    category=ErrorCategory.SECURITY,
                )


class TenantOperation(ABC):
    """Work performed for one tenant of a change message."""

    name = "operation"

    @abstractmethod
    def run(self, context: TenantOperationContext) -> Any:
        """Perform the operation.

        Raises:
            Exception: Any failure; it is classified by the resilience
                       controller to decide whether to retry
        """
        pass


SenderFactory = Callable[[boto3.Session, TenantAccount], NotificationSender]


class NotificationOperation(TenantOperation):
    """Renders the change notification and sends it with tenant credentials."""

    name = "notify"

    def __init__(
        self,
        sender_factory: SenderFactory,
        renderer: Optional[NotificationRenderer] = None,
    ) -> None:
        self.sender_factory = sender_factory
        self.renderer = renderer or PlainTextRenderer()
        self._senders: Dict[str, Tuple[boto3.Session, NotificationSender]] = {}
        self._senders_lock = threading.Lock()

    @classmethod
    def with_ses(
        cls,
        source_address: str,
        renderer: Optional[NotificationRenderer] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
    ) -> "NotificationOperation":
        """Build an operation that sends through SES in each tenant's region."""

        def factory(session: boto3.Session, tenant: TenantAccount) -> NotificationSender:
            return SesNotificationSender(
                session,
                source_address,
                region_name=tenant.region,
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
            )

        return cls(factory, renderer)

    def _sender(self, context: TenantOperationContext) -> NotificationSender:
        """Get the tenant's sender, rebuilt only when its session changes."""
        session = context.session(SERVICE_NOTIFICATION)
        code = context.tenant.code
        with self._senders_lock:
            cached = self._senders.get(code)
            if cached is not None and cached[0] is session:
                return cached[1]

        sender = self.sender_factory(session, context.tenant)
        with self._senders_lock:
            self._senders[code] = (session, sender)
        return sender

    def run(self, context: TenantOperationContext) -> str:
        message = context.message

        with context.step("check-resources", "Verify referenced resources belong to the tenant"):
            for resource in message.metadata.get("resources", []) or []:
                context.check_access(str(resource), "notify")

        with context.step("render", f"Render template {message.template_id}"):
            rendered = self.renderer.render(message, context.tenant)

        with context.step("send", f"Send to {len(rendered.recipients)} recipient(s)"):
            sender = self._sender(context)
            message_id = sender.send(rendered.subject, rendered.body, rendered.recipients)

        logger.info(f"Notified {context.tenant.code} for change {message.change_id}: {message_id}")
        return message_id
