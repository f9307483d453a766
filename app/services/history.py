"""Notification history (the user's inbox)."""

import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from app.models.notification import NotificationHistory
from app.services.delivery_queue import QueuedDelivery
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def record_delivery(
    session: Session,
    delivery: QueuedDelivery,
) -> tuple[NotificationHistory, bool]:
    """Insert the history row for a delivery, at most once per delivery key.

    The unique constraint on ``delivery_key`` is the idempotency guard: a
    delivery retried after a partial failure finds the first row instead
    of writing a second one.

    Returns:
        (row, created) where created is False if the row already existed
    """
    existing = session.exec(
        select(NotificationHistory).where(NotificationHistory.delivery_key == delivery.key)
    ).first()
    if existing is not None:
        return existing, False

    payload = delivery.payload
    row = NotificationHistory(
        user_id=payload.user_id,
        delivery_key=delivery.key,
        title=payload.title,
        message=payload.message,
        notification_type=payload.notification_type,
        item_id=payload.item_id,
        item_type=payload.item_type,
    )
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = session.exec(
            select(NotificationHistory).where(NotificationHistory.delivery_key == delivery.key)
        ).first()
        if existing is None:
            raise
        logger.debug(
            "History row written concurrently",
            extra={"queue_key": delivery.key},
        )
        return existing, False

    session.refresh(row)
    return row, True


def list_history(session: Session, user_id: UUID, limit: int = 50) -> list[NotificationHistory]:
    """Most recent history rows for a user."""
    return list(
        session.exec(
            select(NotificationHistory)
            .where(NotificationHistory.user_id == user_id)
            .order_by(col(NotificationHistory.created_at).desc())
            .limit(limit)
        ).all()
    )


def count_unread(session: Session, user_id: UUID) -> int:
    return session.exec(
        select(func.count())
        .select_from(NotificationHistory)
        .where(NotificationHistory.user_id == user_id)
        .where(col(NotificationHistory.read_at).is_(None))
    ).one()


def _get_owned(session: Session, user_id: UUID, history_id: UUID) -> NotificationHistory | None:
    return session.exec(
        select(NotificationHistory).where(
            NotificationHistory.id == history_id,
            NotificationHistory.user_id == user_id,
        )
    ).first()


def mark_read(session: Session, user_id: UUID, history_id: UUID) -> NotificationHistory | None:
    row = _get_owned(session, user_id, history_id)
    if row is None:
        return None
    if row.read_at is None:
        row.read_at = utcnow()
        session.add(row)
        session.commit()
        session.refresh(row)
    return row


def mark_clicked(session: Session, user_id: UUID, history_id: UUID) -> NotificationHistory | None:
    """Record a click; clicking also counts as reading."""
    row = _get_owned(session, user_id, history_id)
    if row is None:
        return None
    now = utcnow()
    if row.clicked_at is None:
        row.clicked_at = now
    if row.read_at is None:
        row.read_at = now
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def mark_all_read(session: Session, user_id: UUID) -> int:
    rows = session.exec(
        select(NotificationHistory)
        .where(NotificationHistory.user_id == user_id)
        .where(col(NotificationHistory.read_at).is_(None))
    ).all()
    now = utcnow()
    for row in rows:
        row.read_at = now
        session.add(row)
    session.commit()
    return len(rows)
