"""Notification dispatch."""

from .base import Notifier
from .messages import owner_notification, recipient_confirmation

__all__ = ["Notifier", "owner_notification", "recipient_confirmation"]
