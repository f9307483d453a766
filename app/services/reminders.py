"""Deadline reminders for tasks, brainstorms and notes.

An item with a deadline gets up to three queued deliveries:
1. First reminder, ``first_reminder_time`` minutes before the deadline
2. Final reminder, ``second_reminder_time`` minutes before the deadline
3. The deadline notification itself

Reminder offsets come from the user's notification settings; a missing
or zero offset skips that reminder. Instants already in the past are not
queued. Scheduling again for the same item replaces earlier reminders,
so moving a deadline never leaves stale deliveries behind.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlmodel import Session

from app.models.notification import NotificationType
from app.services.delivery_queue import DeliveryPayload, DeliveryQueue, reminder_key
from app.services.job_trigger import JobTriggerClient
from app.services.preferences import get_user_settings
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

REMINDER_TYPES = frozenset(
    {
        NotificationType.FIRST_REMINDER.value,
        NotificationType.SECOND_REMINDER.value,
        NotificationType.DEADLINE.value,
    }
)


@dataclass(frozen=True)
class ReminderPlan:
    """One reminder to be queued for an item."""

    kind: NotificationType
    fire_at: datetime
    title: str
    message: str


def plan_item_reminders(
    item_type: str,
    deadline: datetime,
    first_reminder_minutes: int | None,
    second_reminder_minutes: int | None,
) -> list[ReminderPlan]:
    """Reminder instants and texts for an item, earliest first."""
    deadline = ensure_utc(deadline)
    plans = []

    if first_reminder_minutes:
        plans.append(
            ReminderPlan(
                kind=NotificationType.FIRST_REMINDER,
                fire_at=deadline - timedelta(minutes=first_reminder_minutes),
                title=f"First Reminder: {item_type} Due Soon",
                message=f"Your {item_type} is due in {first_reminder_minutes} minutes",
            )
        )

    if second_reminder_minutes:
        plans.append(
            ReminderPlan(
                kind=NotificationType.SECOND_REMINDER,
                fire_at=deadline - timedelta(minutes=second_reminder_minutes),
                title=f"Final Reminder: {item_type} Due Soon",
                message=f"Your {item_type} is due in {second_reminder_minutes} minutes",
            )
        )

    plans.append(
        ReminderPlan(
            kind=NotificationType.DEADLINE,
            fire_at=deadline,
            title=f"{item_type} Deadline Reached",
            message=f"Your {item_type} is now due",
        )
    )

    return sorted(plans, key=lambda plan: plan.fire_at)


def cancel_item_reminders(
    queue: DeliveryQueue,
    user_id: UUID,
    item_type: str,
    item_id: str,
) -> int:
    """Remove every queued reminder for an item. Returns the number removed."""
    removed = 0
    for delivery in queue.pending_for_user(user_id):
        payload = delivery.payload
        if (
            payload.item_type == item_type
            and payload.item_id == item_id
            and payload.notification_type in REMINDER_TYPES
            and queue.remove(delivery.key)
        ):
            removed += 1

    if removed:
        logger.info(
            "Cancelled item reminders",
            extra={"item_type": item_type, "item_id": item_id, "count": removed},
        )
    return removed


def schedule_item_reminders(
    session: Session,
    queue: DeliveryQueue,
    user_id: UUID,
    item_id: str,
    item_type: str,
    deadline: datetime,
    job_trigger: JobTriggerClient | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Queue the reminders for an item's deadline.

    Returns:
        Queue keys of the reminders now pending for the item
    """
    settings = get_user_settings(session, user_id)
    if not settings.notifications_enabled:
        logger.debug(
            "Notifications disabled, no reminders scheduled",
            extra={"user_id": str(user_id), "item_id": item_id},
        )
        return []

    cancel_item_reminders(queue, user_id, item_type, item_id)

    current = ensure_utc(now or utcnow())
    keys = []
    for plan in plan_item_reminders(
        item_type,
        deadline,
        settings.first_reminder_time,
        settings.second_reminder_time,
    ):
        if plan.fire_at <= current:
            continue

        key = reminder_key(user_id, item_type, item_id, plan.kind.value, plan.fire_at)
        queue.enqueue(
            key,
            DeliveryPayload(
                user_id=user_id,
                title=plan.title,
                message=plan.message,
                notification_type=plan.kind.value,
                item_id=item_id,
                item_type=item_type,
            ),
            plan.fire_at,
        )
        keys.append(key)

        if job_trigger is not None:
            job_trigger.schedule_processing(plan.fire_at)

    logger.info(
        "Item reminders scheduled",
        extra={
            "user_id": str(user_id),
            "item_type": item_type,
            "item_id": item_id,
            "count": len(keys),
        },
    )
    return keys
