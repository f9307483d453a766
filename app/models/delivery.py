"""ScheduledDelivery entity: the durable, time-ordered delivery queue."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import BigInteger, Column, DateTime
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class QueueStatus(str, Enum):
    """Claim state of a queued delivery.

    A delivery is ``queued`` until a processor claims it. Successful
    processing deletes the row; a failure releases it back to ``queued``.
    """

    QUEUED = "queued"
    CLAIMED = "claimed"


class ScheduledDelivery(SQLModel, table=True):
    """One obligation to notify one user at one instant.

    ``fire_at_ms`` is the queue score (Unix milliseconds) and is the only
    column range queries run against.
    """

    __tablename__ = "scheduled_deliveries"

    queue_key: str = Field(primary_key=True, max_length=255)
    user_id: UUID = Field(index=True)
    title: str = Field(max_length=200)
    message: str
    scheduled_for: datetime = Field(sa_type=DateTime(timezone=True))
    fire_at_ms: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    item_id: str | None = Field(default=None, max_length=255)
    item_type: str | None = Field(default=None, max_length=50)
    notification_type: str = Field(default="scheduled", max_length=50)

    status: QueueStatus = Field(default=QueueStatus.QUEUED, index=True)
    claimed_by: str | None = Field(default=None, max_length=100)
    claimed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class DirectNotificationCreate(SQLModel):
    """Schema for ad hoc enqueue by an authenticated user."""

    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    scheduled_for: datetime
    item_id: str | None = Field(default=None, max_length=255)
    item_type: str | None = Field(default=None, max_length=50)


class ItemRemindersCreate(SQLModel):
    """Schema for scheduling deadline reminders on an item."""

    item_id: str = Field(max_length=255)
    item_type: str = Field(max_length=50)
    deadline: datetime


class PendingDeliveryResponse(SQLModel):
    """Schema for a delivery still waiting in the queue."""

    queue_key: str
    title: str
    message: str
    scheduled_for: datetime
    item_id: str | None
    item_type: str | None
    notification_type: str
    status: QueueStatus
    attempts: int

    model_config = {"from_attributes": True}
