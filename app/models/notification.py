"""Notification rule, history, settings and push subscription models."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class ScheduleType(str, Enum):
    """Recurrence kinds supported by notification rules."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotificationType(str, Enum):
    """Origin of a delivery, carried through to history rows."""

    SCHEDULED = "scheduled"
    FIRST_REMINDER = "first_reminder"
    SECOND_REMINDER = "second_reminder"
    DEADLINE = "deadline"
    DIRECT = "direct"


# -----------------------------------------------------------------------------
# Notification rules
# -----------------------------------------------------------------------------


class NotificationRuleBase(SQLModel):
    """Fields shared by rule rows and rule payloads."""

    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    schedule_type: ScheduleType
    schedule_time: str = Field(max_length=5)
    schedule_day: int | None = Field(default=None, ge=1, le=31)


class NotificationRule(NotificationRuleBase, table=True):
    """Recurring notification definition maintained by administrators."""

    __tablename__ = "notification_rules"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    is_active: bool = Field(default=True, index=True)
    is_deleted: bool = Field(default=False)
    created_by: UUID | None = Field(default=None, foreign_key="users.id")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class NotificationRuleCreate(NotificationRuleBase):
    """Schema for rule creation."""

    is_active: bool = True


class NotificationRuleUpdate(SQLModel):
    """Schema for partial rule update."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    message: str | None = Field(default=None, min_length=1, max_length=2000)
    schedule_type: ScheduleType | None = None
    schedule_time: str | None = Field(default=None, max_length=5)
    schedule_day: int | None = Field(default=None, ge=1, le=31)
    is_active: bool | None = None


class NotificationRuleResponse(SQLModel):
    """Schema for rule response."""

    id: UUID
    title: str
    message: str
    schedule_type: ScheduleType
    schedule_time: str
    schedule_day: int | None
    is_active: bool
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# -----------------------------------------------------------------------------
# History (user inbox)
# -----------------------------------------------------------------------------


class NotificationHistory(SQLModel, table=True):
    """Immutable inbox row written once per processed delivery.

    ``delivery_key`` is unique so a delivery retried after a partial
    failure cannot produce a second row.
    """

    __tablename__ = "notification_history"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    delivery_key: str | None = Field(default=None, max_length=255, unique=True)
    title: str = Field(max_length=200)
    message: str
    notification_type: str = Field(default=NotificationType.SCHEDULED.value, max_length=50)
    item_id: str | None = Field(default=None, max_length=255)
    item_type: str | None = Field(default=None, max_length=50)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)
    read_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    clicked_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))


class NotificationHistoryResponse(SQLModel):
    """Schema for history response."""

    id: UUID
    title: str
    message: str
    notification_type: str
    item_id: str | None
    item_type: str | None
    created_at: datetime
    read_at: datetime | None
    clicked_at: datetime | None

    model_config = {"from_attributes": True}


class NotificationHistoryListResponse(SQLModel):
    """Schema for history list response."""

    notifications: list[NotificationHistoryResponse]
    unread: int


# -----------------------------------------------------------------------------
# Per-user settings
# -----------------------------------------------------------------------------


DEFAULT_FIRST_REMINDER_MINUTES = 1440
DEFAULT_SECOND_REMINDER_MINUTES = 60


class NotificationSettingsBase(SQLModel):
    """User-editable notification preferences."""

    notifications_enabled: bool = True
    sound_enabled: bool = True
    push_enabled: bool = True
    browser_enabled: bool = True
    first_reminder_time: int | None = Field(default=DEFAULT_FIRST_REMINDER_MINUTES, ge=0)
    second_reminder_time: int | None = Field(default=DEFAULT_SECOND_REMINDER_MINUTES, ge=0)
    timezone: str = Field(default="UTC", max_length=64)


class NotificationSettings(NotificationSettingsBase, table=True):
    """Stored preferences; a missing row means defaults."""

    __tablename__ = "notification_settings"

    user_id: UUID = Field(foreign_key="users.id", primary_key=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class NotificationSettingsUpdate(SQLModel):
    """Schema for partial settings update."""

    notifications_enabled: bool | None = None
    sound_enabled: bool | None = None
    push_enabled: bool | None = None
    browser_enabled: bool | None = None
    first_reminder_time: int | None = Field(default=None, ge=0)
    second_reminder_time: int | None = Field(default=None, ge=0)
    timezone: str | None = Field(default=None, max_length=64)


class NotificationSettingsResponse(NotificationSettingsBase):
    """Schema for settings response."""

    model_config = {"from_attributes": True}


# -----------------------------------------------------------------------------
# Push subscriptions
# -----------------------------------------------------------------------------


class PushSubscription(SQLModel, table=True):
    """Browser/device endpoint registered for Web Push."""

    __tablename__ = "push_subscriptions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    endpoint: str = Field(max_length=2048, unique=True)
    auth: str = Field(max_length=255)
    p256dh: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def subscription_info(self) -> dict:
        """Subscription in the shape expected by Web Push libraries."""
        return {
            "endpoint": self.endpoint,
            "keys": {"auth": self.auth, "p256dh": self.p256dh},
        }


class PushSubscriptionKeys(BaseModel):
    auth: str
    p256dh: str


class PushSubscriptionCreate(BaseModel):
    """Schema matching the browser's ``PushSubscription.toJSON()``."""

    endpoint: str
    keys: PushSubscriptionKeys


class PushSubscriptionDelete(BaseModel):
    endpoint: str
