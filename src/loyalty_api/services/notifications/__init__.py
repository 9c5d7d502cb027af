"""Notification service package."""

from .dispatcher import NotificationDispatcher, NotificationDraft
from .templates import RenderedTemplate

__all__ = [
    "NotificationDispatcher",
    "NotificationDraft",
    "RenderedTemplate",
]
