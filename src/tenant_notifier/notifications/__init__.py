"""Notification collaborators package."""

from tenant_notifier.notifications.sender import (
    NotificationError,
    NotificationRenderer,
    NotificationSender,
    PlainTextRenderer,
    RenderedNotification,
    SesNotificationSender,
)

__all__ = [
    'NotificationError',
    'NotificationRenderer',
    'NotificationSender',
    'PlainTextRenderer',
    'RenderedNotification',
    'SesNotificationSender',
]
