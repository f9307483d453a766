"""SQLModel entities for the notification engine."""

from app.models.brainstorm import Brainstorm
from app.models.delivery import QueueStatus, ScheduledDelivery
from app.models.note import Note
from app.models.notification import (
    NotificationHistory,
    NotificationRule,
    NotificationSettings,
    NotificationType,
    PushSubscription,
    ScheduleType,
)
from app.models.task import Task
from app.models.user import User

__all__ = [
    "User",
    "Task",
    "Brainstorm",
    "Note",
    "NotificationRule",
    "NotificationHistory",
    "NotificationSettings",
    "NotificationType",
    "PushSubscription",
    "ScheduleType",
    "ScheduledDelivery",
    "QueueStatus",
]
