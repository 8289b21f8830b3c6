"""Notification layer between the orchestration core and UI clients."""
from .event_bus import EventBus, NotificationSubscription
from .events import Notification, dict_to_event, event_to_dict

__all__ = [
    "EventBus",
    "Notification",
    "NotificationSubscription",
    "dict_to_event",
    "event_to_dict",
]
