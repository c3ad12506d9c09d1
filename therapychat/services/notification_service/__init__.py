"""Notification Service - outbound therapist and patient notifications.

The chat core decides that someone must be told; this service composes
the message from configurable templates and queues it. Queue failures
are reported as NotificationDeliveryFailure and never roll back the
state change they accompany.
"""
from .config import NotificationConfig
from .dispatcher import (
    Notification,
    NotificationDispatcher,
    InMemoryNotificationQueue,
)
from .kinesis_publisher import KinesisNotificationDispatcher

__all__ = [
    "NotificationConfig",
    "Notification",
    "NotificationDispatcher",
    "InMemoryNotificationQueue",
    "KinesisNotificationDispatcher",
]
