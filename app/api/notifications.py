"""Notification API endpoints."""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import CurrentUser, CycleRunner, DBSession, JobTrigger, Queue, SignedBody
from app.config import get_settings
from app.models.delivery import (
    DirectNotificationCreate,
    ItemRemindersCreate,
    PendingDeliveryResponse,
)
from app.models.notification import (
    NotificationHistoryListResponse,
    NotificationHistoryResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    NotificationType,
    PushSubscriptionCreate,
    PushSubscriptionDelete,
)
from app.services.delivery_queue import DeliveryPayload, QueuedDelivery, direct_key
from app.services.history import (
    count_unread,
    list_history,
    mark_all_read,
    mark_clicked,
    mark_read,
)
from app.services.preferences import (
    delete_push_subscription,
    get_user_settings,
    save_push_subscription,
    update_user_settings,
)
from app.services.reminders import cancel_item_reminders, schedule_item_reminders
from app.utils.time import ensure_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


def _pending_response(delivery: QueuedDelivery) -> PendingDeliveryResponse:
    payload = delivery.payload
    return PendingDeliveryResponse(
        queue_key=delivery.key,
        title=payload.title,
        message=payload.message,
        scheduled_for=ensure_utc(delivery.fire_at),
        item_id=payload.item_id,
        item_type=payload.item_type,
        notification_type=payload.notification_type,
        status=delivery.status,
        attempts=delivery.attempts,
    )


# -----------------------------------------------------------------------------
# Processing (called by the job trigger)
# -----------------------------------------------------------------------------


@router.post("/process")
def process_notifications_endpoint(
    body: SignedBody,
    runner: CycleRunner,
) -> dict[str, Any]:
    """Expand active rules and deliver everything that is due."""
    result = runner.run_once()
    return result.summary()


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------


@router.get("/history", response_model=NotificationHistoryListResponse)
def list_history_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    limit: int | None = Query(default=None, ge=1, le=200, description="Maximum number of rows"),
) -> NotificationHistoryListResponse:
    """List the authenticated user's notification history, newest first."""
    rows = list_history(session, current_user.id, limit or get_settings().HISTORY_DEFAULT_LIMIT)
    return NotificationHistoryListResponse(
        notifications=[NotificationHistoryResponse.model_validate(row) for row in rows],
        unread=count_unread(session, current_user.id),
    )


@router.post("/history/read-all")
def mark_all_read_endpoint(
    session: DBSession,
    current_user: CurrentUser,
) -> dict[str, int]:
    """Mark every unread history row as read."""
    return {"updated": mark_all_read(session, current_user.id)}


@router.post("/history/{history_id}/read", response_model=NotificationHistoryResponse)
def mark_read_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    history_id: UUID,
) -> NotificationHistoryResponse:
    row = mark_read(session, current_user.id, history_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        )
    return NotificationHistoryResponse.model_validate(row)


@router.post("/history/{history_id}/clicked", response_model=NotificationHistoryResponse)
def mark_clicked_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    history_id: UUID,
) -> NotificationHistoryResponse:
    row = mark_clicked(session, current_user.id, history_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        )
    return NotificationHistoryResponse.model_validate(row)


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------


@router.get("/settings", response_model=NotificationSettingsResponse)
def get_settings_endpoint(
    session: DBSession,
    current_user: CurrentUser,
) -> NotificationSettingsResponse:
    """Get the user's notification settings (defaults if never saved)."""
    return NotificationSettingsResponse.model_validate(get_user_settings(session, current_user.id))


@router.put("/settings", response_model=NotificationSettingsResponse)
def update_settings_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    settings_data: NotificationSettingsUpdate,
) -> NotificationSettingsResponse:
    """Update the user's notification settings."""
    settings = update_user_settings(session, current_user.id, settings_data)
    return NotificationSettingsResponse.model_validate(settings)


# -----------------------------------------------------------------------------
# Push subscriptions
# -----------------------------------------------------------------------------


@router.post("/subscription", status_code=status.HTTP_201_CREATED)
def save_subscription_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    subscription_data: PushSubscriptionCreate,
) -> dict[str, str]:
    """Register the browser's push subscription for the user."""
    subscription = save_push_subscription(session, current_user.id, subscription_data)
    return {"message": "Subscription saved", "id": str(subscription.id)}


@router.delete("/subscription", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    subscription_data: PushSubscriptionDelete,
) -> None:
    """Unregister a push subscription."""
    if not delete_push_subscription(session, current_user.id, subscription_data.endpoint):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )


# -----------------------------------------------------------------------------
# Queue
# -----------------------------------------------------------------------------


@router.post("/queue", response_model=PendingDeliveryResponse, status_code=status.HTTP_201_CREATED)
def enqueue_notification_endpoint(
    current_user: CurrentUser,
    queue: Queue,
    job_trigger: JobTrigger,
    notification_data: DirectNotificationCreate,
) -> PendingDeliveryResponse:
    """Queue a one-off notification for the authenticated user."""
    key = direct_key(current_user.id)
    payload = DeliveryPayload(
        user_id=current_user.id,
        title=notification_data.title,
        message=notification_data.message,
        notification_type=NotificationType.DIRECT.value,
        item_id=notification_data.item_id,
        item_type=notification_data.item_type,
    )
    queue.enqueue(key, payload, notification_data.scheduled_for)
    job_trigger.schedule_processing(notification_data.scheduled_for)

    delivery = next(
        (pending for pending in queue.pending_for_user(current_user.id) if pending.key == key),
        None,
    )
    if delivery is None:
        # Already drained by a concurrent cycle
        delivery = QueuedDelivery(key=key, payload=payload, fire_at=notification_data.scheduled_for)
    return _pending_response(delivery)


@router.get("/queue", response_model=list[PendingDeliveryResponse])
def list_queue_endpoint(
    current_user: CurrentUser,
    queue: Queue,
) -> list[PendingDeliveryResponse]:
    """List the user's deliveries that have not been sent yet."""
    return [_pending_response(delivery) for delivery in queue.pending_for_user(current_user.id)]


# -----------------------------------------------------------------------------
# Deadline reminders
# -----------------------------------------------------------------------------


@router.post("/reminders", status_code=status.HTTP_201_CREATED)
def schedule_reminders_endpoint(
    session: DBSession,
    current_user: CurrentUser,
    queue: Queue,
    job_trigger: JobTrigger,
    reminder_data: ItemRemindersCreate,
) -> dict[str, list[str]]:
    """Schedule first, final and deadline reminders for an item."""
    keys = schedule_item_reminders(
        session,
        queue,
        current_user.id,
        reminder_data.item_id,
        reminder_data.item_type,
        reminder_data.deadline,
        job_trigger=job_trigger,
    )
    return {"scheduled": keys}


@router.delete("/reminders/{item_type}/{item_id}")
def cancel_reminders_endpoint(
    current_user: CurrentUser,
    queue: Queue,
    item_type: str,
    item_id: str,
) -> dict[str, int]:
    """Cancel pending reminders for an item (completed or deleted)."""
    return {"cancelled": cancel_item_reminders(queue, current_user.id, item_type, item_id)}
