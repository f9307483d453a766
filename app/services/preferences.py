"""Per-user notification preferences and push subscriptions."""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlmodel import Session, col, select

from app.models.notification import (
    NotificationSettings,
    NotificationSettingsUpdate,
    PushSubscription,
    PushSubscriptionCreate,
)
from app.models.user import User
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationTarget:
    """A user who should receive rule fan-out, with their timezone."""

    user_id: UUID
    timezone: str


def get_user_settings(session: Session, user_id: UUID) -> NotificationSettings:
    """Stored settings for a user, or an unsaved defaults row."""
    settings = session.get(NotificationSettings, user_id)
    if settings is None:
        settings = NotificationSettings(user_id=user_id)
    return settings


def update_user_settings(
    session: Session,
    user_id: UUID,
    data: NotificationSettingsUpdate,
) -> NotificationSettings:
    """Upsert a user's settings with the fields present in ``data``."""
    settings = get_user_settings(session, user_id)

    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(settings, key, value)

    settings.updated_at = utcnow()
    session.add(settings)
    session.commit()
    session.refresh(settings)
    return settings


def list_notification_targets(session: Session) -> list[NotificationTarget]:
    """Users with notifications enabled.

    Users without a settings row get the defaults, which are enabled.
    """
    rows = session.exec(
        select(User.id, NotificationSettings.timezone)
        .join(
            NotificationSettings,
            NotificationSettings.user_id == User.id,
            isouter=True,
        )
        .where(
            (col(NotificationSettings.user_id).is_(None))
            | (NotificationSettings.notifications_enabled == True)  # noqa: E712
        )
        .order_by(User.created_at)
    ).all()

    return [NotificationTarget(user_id=user_id, timezone=tz or "UTC") for user_id, tz in rows]


# -----------------------------------------------------------------------------
# Push subscriptions
# -----------------------------------------------------------------------------


def list_push_subscriptions(session: Session, user_id: UUID) -> list[PushSubscription]:
    return list(
        session.exec(
            select(PushSubscription)
            .where(PushSubscription.user_id == user_id)
            .order_by(PushSubscription.created_at)
        ).all()
    )


def save_push_subscription(
    session: Session,
    user_id: UUID,
    data: PushSubscriptionCreate,
) -> PushSubscription:
    """Register an endpoint, moving it to ``user_id`` if already known."""
    subscription = session.exec(
        select(PushSubscription).where(PushSubscription.endpoint == data.endpoint)
    ).first()

    if subscription is None:
        subscription = PushSubscription(
            user_id=user_id,
            endpoint=data.endpoint,
            auth=data.keys.auth,
            p256dh=data.keys.p256dh,
        )
    else:
        subscription.user_id = user_id
        subscription.auth = data.keys.auth
        subscription.p256dh = data.keys.p256dh
        subscription.updated_at = utcnow()

    session.add(subscription)
    session.commit()
    session.refresh(subscription)

    logger.info(
        "Push subscription saved",
        extra={"user_id": str(user_id), "subscription_id": str(subscription.id)},
    )
    return subscription


def delete_push_subscription(session: Session, user_id: UUID, endpoint: str) -> bool:
    subscription = session.exec(
        select(PushSubscription)
        .where(PushSubscription.user_id == user_id)
        .where(PushSubscription.endpoint == endpoint)
    ).first()
    if subscription is None:
        return False

    session.delete(subscription)
    session.commit()
    return True


def prune_push_subscriptions(session: Session, subscription_ids: list[UUID]) -> int:
    """Delete subscriptions the push service reported as gone."""
    if not subscription_ids:
        return 0

    stale = session.exec(
        select(PushSubscription).where(col(PushSubscription.id).in_(subscription_ids))
    ).all()
    for subscription in stale:
        session.delete(subscription)
    session.commit()

    if stale:
        logger.info(
            "Pruned expired push subscriptions",
            extra={"count": len(stale)},
        )
    return len(stale)
