"""Message ingestion pipeline package."""

from tenant_notifier.pipeline.messages import (
    ChangeMessage,
    MessageValidationError,
    build_dead_letter_body,
)
from tenant_notifier.pipeline.operations import (
    NotificationOperation,
    TenantOperation,
    TenantOperationContext,
)
from tenant_notifier.pipeline.processor import (
    MessageProcessor,
    MessageState,
    ProcessingOutcome,
    QueueConnectionError,
    ShutdownTimeoutError,
)

__all__ = [
    'ChangeMessage',
    'MessageProcessor',
    'MessageState',
    'MessageValidationError',
    'NotificationOperation',
    'ProcessingOutcome',
    'QueueConnectionError',
    'ShutdownTimeoutError',
    'TenantOperation',
    'TenantOperationContext',
    'build_dead_letter_body',
]
